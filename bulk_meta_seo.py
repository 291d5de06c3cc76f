#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bulk Meta SEO Generator
Upload a product spreadsheet, generate SEO meta titles/descriptions (English and
Arabic by default) in batches of 15, and export the augmented CSV. Progress is
saved after every batch so a stopped or quota-limited run can be resumed.

Example Usage:
  python bulk_meta_seo.py --input products.xlsx --output-dir out
  python bulk_meta_seo.py --resume --output-dir out
"""

import os
import signal
import asyncio
import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from tqdm import tqdm

from batch_orchestrator import CHUNK_SIZE, BatchOrchestrator, JobResult, JobState, JobUpdate, MetaSession
from meta_generation import BILINGUAL, DEFAULT_MODEL, ENGLISH_ONLY, MetaGenerator, default_instructions, estimate_tokens
from product_records import RecordError, export_csv, export_filename, parse_and_normalize
from session_store import FileBlobStore, SessionStore
from seo_utils import setup_logger

logger = setup_logger()

EXIT_CODES = {
    JobState.COMPLETED: 0,
    JobState.STOPPED: 0,
    JobState.QUOTA_EXCEEDED: 2,
    JobState.FAILED: 1,
}

# ---------- Settings ----------
@dataclass
class Settings:
    api_key: str = ""
    model: str = DEFAULT_MODEL
    timeout: float = 60.0
    session_dir: str = ".meta_seo_sessions"
    chunk_size: int = CHUNK_SIZE
    chunk_retries: int = 0

def load_settings() -> Settings:
    """Settings from the environment (and a .env file, if present)."""
    load_dotenv()
    return Settings(
        api_key=os.getenv("OPENAI_API_KEY", ""),
        model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
        timeout=float(os.getenv("META_SEO_TIMEOUT", "60")),
        session_dir=os.getenv("META_SEO_SESSION_DIR", ".meta_seo_sessions"),
        chunk_size=int(os.getenv("META_SEO_CHUNK_SIZE", str(CHUNK_SIZE))),
        chunk_retries=int(os.getenv("META_SEO_CHUNK_RETRIES", "0")),
    )

# ---------- Runner ----------
async def run_generation(orchestrator: BatchOrchestrator, instructions: str, resume: bool = False) -> JobResult:
    """Run one job with a progress bar; Ctrl-C asks the job to stop after the current batch."""
    session = orchestrator.session
    pbar = tqdm(total=session.total, initial=session.processed_count, desc="Generating meta content")

    def on_update(update: JobUpdate):
        pbar.n = update.processed
        pbar.set_postfix_str(f"tokens={update.tokens_used:,}")
        pbar.refresh()

    orchestrator.on_update = on_update
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        if resume:
            return await orchestrator.resume(instructions)
        return await orchestrator.start(instructions)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        pbar.close()

# ---------- CLI Interface ----------
def main(argv: Optional[list] = None):
    """Main CLI interface."""
    settings = load_settings()
    parser = argparse.ArgumentParser(
        description="Bulk SEO meta title/description generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--input", "-i", help="Input CSV/XLSX file (required unless --resume)")
    parser.add_argument("--output-dir", "-o", default=".", help="Directory for the exported CSV")
    parser.add_argument("--resume", action="store_true", help="Resume the saved session")
    parser.add_argument("--dismiss-session", action="store_true", help="Delete the saved session and exit")
    parser.add_argument("--estimate-only", action="store_true", help="Print the token estimate and exit")
    parser.add_argument("--english-only", action="store_true", help="Generate English fields only")
    parser.add_argument("--instructions-file", help="Text file with custom AI instructions")

    parser.add_argument("--api-key", default=settings.api_key,
                        help="OpenAI API key (or set OPENAI_API_KEY env var)")
    parser.add_argument("--model", default=settings.model, help="OpenAI model to use")
    parser.add_argument("--timeout", type=float, default=settings.timeout,
                        help="HTTP timeout seconds per request")
    parser.add_argument("--chunk-size", type=int, default=settings.chunk_size,
                        help="Products per API call")
    parser.add_argument("--chunk-retries", type=int, default=settings.chunk_retries,
                        help="Retries for a failed batch (quota errors are never retried)")
    parser.add_argument("--session-dir", default=settings.session_dir, help="Where the session is saved")

    args = parser.parse_args(argv)

    store = SessionStore(FileBlobStore(args.session_dir))
    if args.dismiss_session:
        store.clear()
        logger.info("Saved session dismissed")
        return

    profile = ENGLISH_ONLY if args.english_only else BILINGUAL
    instructions = default_instructions(profile)
    if args.instructions_file:
        instructions = Path(args.instructions_file).read_text(encoding="utf-8")

    session = MetaSession(store)
    if args.resume:
        snapshot = store.load()
        if snapshot is None:
            raise SystemExit("Error: No saved session to resume.")
        session.restore(snapshot)
        logger.info(f"Restored session for {snapshot.file_name}: "
                    f"{session.processed_count} of {session.total} products processed")
    else:
        if not args.input:
            raise SystemExit("Error: --input is required unless --resume is given")
        input_path = Path(args.input)
        if not input_path.exists():
            raise SystemExit(f"Error: Input file not found: {input_path}")
        try:
            records = parse_and_normalize(input_path)
        except RecordError as e:
            raise SystemExit(f"Error: {e}")
        session.load_records(input_path.name, records)

    estimate = estimate_tokens(session.original_records, instructions)
    if args.estimate_only:
        logger.info(f"Estimated tokens for this job: ~{estimate:,}")
        return

    if not args.api_key:
        raise SystemExit("Error: Set OPENAI_API_KEY environment variable or pass --api-key")

    logger.info("=" * 60)
    logger.info("Bulk Meta SEO Generator")
    logger.info("=" * 60)
    logger.info(f"File: {session.file_name} ({session.total} products)")
    logger.info(f"Model: {args.model}, profile: {profile.name}, chunk size: {args.chunk_size}")
    logger.info(f"Estimated tokens: ~{estimate:,}")
    logger.info("=" * 60)

    generator = MetaGenerator(api_key=args.api_key, model=args.model, timeout=args.timeout, profile=profile)
    orchestrator = BatchOrchestrator(generator, session, chunk_size=args.chunk_size,
                                     chunk_retries=args.chunk_retries)
    result = asyncio.run(run_generation(orchestrator, instructions, resume=args.resume))

    if result.state is JobState.COMPLETED:
        logger.info(result.message)
    elif result.state is JobState.STOPPED:
        logger.info(f"{result.message} Run again with --resume to continue.")
    else:
        logger.error(result.message)

    if session.processed_records:
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / export_filename(session.file_name)
        export_csv(session.processed_records, output_path)
        logger.info(f"Output saved to: {output_path}")

    code = EXIT_CODES[result.state]
    if code:
        raise SystemExit(code)

if __name__ == "__main__":
    main()
