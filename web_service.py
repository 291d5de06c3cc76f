import asyncio
import threading
from flask import Flask, Response, request, jsonify
from dotenv import load_dotenv

from batch_orchestrator import BatchOrchestrator, InstructionSettings, JobAlreadyRunning, MetaSession, NO_DATA_MESSAGE
from bulk_meta_seo import load_settings
from meta_generation import BILINGUAL, MetaGenerator, OutputProfile, default_instructions, estimate_tokens
from product_records import RecordError, export_csv, export_filename, parse_and_normalize
from row_overrides import RowBusy, RowOverrideController
from session_store import BlobStore, FileBlobStore, SessionStore
from seo_utils import get_logger

# Load environment variables
load_dotenv()

logger = get_logger("web")


class ServiceState:
    """Everything one running service instance works on."""

    def __init__(self, generator_factory, store: SessionStore, profile: OutputProfile, chunk_size: int,
                 chunk_retries: int):
        self.generator_factory = generator_factory
        self.store = store
        self.session = MetaSession(store)
        self.instructions = InstructionSettings(default_instructions(profile))
        self.orchestrator = BatchOrchestrator(generator_factory(), self.session,
                                              chunk_size=chunk_size, chunk_retries=chunk_retries)
        self.overrides = RowOverrideController(generator_factory(), self.session, self.orchestrator)
        self.thread = None
        self.last_result = None
        self.lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


def create_app(generator_factory=None, blob_store: BlobStore = None, profile: OutputProfile = BILINGUAL) -> Flask:
    settings = load_settings()
    if generator_factory is None:
        # one client per event loop
        def generator_factory():
            return MetaGenerator(api_key=settings.api_key, model=settings.model,
                                 timeout=settings.timeout, profile=profile)
    store = SessionStore(blob_store or FileBlobStore(settings.session_dir))
    state = ServiceState(generator_factory, store, profile, settings.chunk_size, settings.chunk_retries)

    app = Flask(__name__)
    app.extensions["meta_seo"] = state

    def _run_job(resume: bool):
        logger.info(f"Background job starting (resume={resume})")
        state.orchestrator.generator = state.generator_factory()
        instructions = state.instructions.text
        if resume:
            state.last_result = asyncio.run(state.orchestrator.resume(instructions))
        else:
            state.last_result = asyncio.run(state.orchestrator.start(instructions))

    def _launch(resume: bool):
        if not state.session.original_records:
            return jsonify({"error": NO_DATA_MESSAGE}), 400
        with state.lock:
            if state.busy or state.orchestrator.running:
                return jsonify({"error": "A generation job is already running."}), 409
            state.thread = threading.Thread(target=_run_job, args=(resume,), daemon=True)
            state.thread.start()
        return jsonify({"status": "running", "resume": resume}), 202

    def _status_body():
        session = state.session
        result = state.last_result
        return {
            "file_name": session.file_name,
            "state": state.orchestrator.state.value,
            "processed": session.processed_count,
            "total": session.total,
            "progress": session.progress,
            "message": session.message,
            "error": session.error,
            "resumable": session.resumable,
            "regenerating": state.overrides.regenerating_keys(),
            "tokens_used": result.tokens_used if result else 0,
        }

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "healthy", "service": "meta-seo-web-service"})

    @app.route('/upload', methods=['POST'])
    def upload():
        upload_file = request.files.get('file')
        if upload_file is None or not upload_file.filename:
            return jsonify({"error": "No file provided"}), 400
        if state.busy:
            return jsonify({"error": "A generation job is already running."}), 409
        try:
            records = parse_and_normalize(upload_file.read(), upload_file.filename)
        except RecordError as e:
            return jsonify({"error": str(e)}), 400

        state.session.load_records(upload_file.filename, records)
        logger.info(f"Uploaded {upload_file.filename}: {len(records)} products")
        state.last_result = None
        return jsonify({
            "file_name": upload_file.filename,
            "total": len(records),
            "columns": list(records[0].fields) if records else [],
            "estimated_tokens": estimate_tokens(records, state.instructions.text),
        })

    @app.route('/generate', methods=['POST'])
    def generate():
        return _launch(resume=False)

    @app.route('/resume', methods=['POST'])
    def resume():
        return _launch(resume=True)

    @app.route('/stop', methods=['POST'])
    def stop():
        running = state.orchestrator.running
        state.orchestrator.stop()
        return jsonify({"stopping": running})

    @app.route('/status', methods=['GET'])
    def status():
        return jsonify(_status_body())

    @app.route('/rows', methods=['GET'])
    def rows():
        return jsonify([p.to_row() for p in state.session.processed_records])

    @app.route('/rows/<key>', methods=['PATCH'])
    def edit_row(key):
        data = request.get_json(silent=True) or {}
        if "field" not in data or "value" not in data:
            return jsonify({"error": "Both 'field' and 'value' are required"}), 400
        try:
            changed = state.overrides.edit(key, data["field"], data["value"])
        except KeyError as e:
            return jsonify({"error": e.args[0]}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"changed": changed, "row": state.session.find(key).to_row()})

    @app.route('/rows/<key>/regenerate', methods=['POST'])
    def regenerate_row(key):
        # fresh client per request: each request thread runs its own event loop
        generator = state.generator_factory()
        try:
            outcome = asyncio.run(state.overrides.regenerate(key, state.instructions.text, generator=generator))
        except RowBusy as e:
            return jsonify({"error": str(e)}), 409
        except KeyError as e:
            return jsonify({"error": e.args[0]}), 404
        row = state.session.find(key)
        return jsonify({
            "status": outcome.status,
            "message": outcome.message,
            "tokens_used": outcome.tokens_used,
            "row": row.to_row() if row else None,
        })

    @app.route('/download', methods=['GET'])
    def download():
        if not state.session.processed_records:
            return jsonify({"error": "No processed data to download."}), 400
        csv_text = export_csv(state.session.processed_records)
        filename = export_filename(state.session.file_name)
        return Response(
            csv_text,
            mimetype='text/csv; charset=utf-8',
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.route('/session', methods=['GET'])
    def saved_session():
        snapshot = state.store.load()
        if snapshot is None:
            return jsonify({"error": "No saved session"}), 404
        return jsonify({
            "file_name": snapshot.file_name,
            "processed": len(snapshot.processed_records),
            "total": len(snapshot.original_records),
            "resumable": snapshot.resumable,
        })

    @app.route('/session/restore', methods=['POST'])
    def restore_session():
        if state.busy:
            return jsonify({"error": "A generation job is already running."}), 409
        snapshot = state.store.load()
        if snapshot is None:
            return jsonify({"error": "No saved session"}), 404
        state.session.restore(snapshot)
        return jsonify(_status_body())

    @app.route('/session', methods=['DELETE'])
    def dismiss_session():
        state.store.clear()
        return jsonify({"dismissed": True})

    @app.route('/instructions', methods=['GET', 'PUT', 'DELETE'])
    def instructions():
        if request.method == 'PUT':
            data = request.get_json(silent=True) or {}
            if not isinstance(data.get("instructions"), str):
                return jsonify({"error": "'instructions' must be a string"}), 400
            state.instructions.update(data["instructions"])
        elif request.method == 'DELETE':
            state.instructions.reset()
        return jsonify({"instructions": state.instructions.text, "is_default": state.instructions.is_default})

    @app.errorhandler(JobAlreadyRunning)
    def job_running(e):
        return jsonify({"error": str(e)}), 409

    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=5000, debug=True)
