import asyncio
import copy
import threading

import pytest

from batch_orchestrator import BatchOrchestrator, MetaSession
from conftest import BlockingGenerator, FakeGenerator, generated_for, make_records
from meta_generation import (
    NO_RESPONSE_TITLE, REGENERATE_FAILED_DESCRIPTION, REGENERATE_FAILED_TITLE, GenerationFailed, QuotaExceeded,
)
from row_overrides import REGENERATE_FAILED, REGENERATE_OK, REGENERATE_QUOTA, RowBusy, RowOverrideController


def processed_session(store=None, n=4):
    session = MetaSession(store)
    session.load_records("catalog.csv", make_records(n))
    session.merge({r.key: generated_for(r.key) for r in session.original_records})
    return session


def test_edit_changes_only_that_field(store):
    session = processed_session(store)
    controller = RowOverrideController(FakeGenerator(), session)

    assert controller.edit("p2", "Meta Title EN", "Hand edited") is True
    assert session.find("p2").generated["Meta Title EN"] == "Hand edited"
    assert session.find("p2").generated["Meta Title AR"] == generated_for("p2")["Meta Title AR"]
    assert session.find("p1").generated == generated_for("p1")
    saved = store.load()
    assert [p.generated["Meta Title EN"] for p in saved.processed_records if p.key == "p2"] == ["Hand edited"]


def test_edit_twice_with_same_value_is_a_no_op(blobs, store):
    session = processed_session(store)
    controller = RowOverrideController(FakeGenerator(), session)
    controller.edit("p1", "Meta Description AR", "وصف")
    writes = blobs.writes
    before = copy.deepcopy(session.processed_records)

    assert controller.edit("p1", "Meta Description AR", "وصف") is False
    assert blobs.writes == writes
    assert session.processed_records == before


def test_edit_keeps_resumable_flag(store):
    session = processed_session(store)
    session.resumable = True
    RowOverrideController(FakeGenerator(), session).edit("p1", "Meta Title EN", "x")
    assert session.resumable is True
    assert store.load().resumable is True


def test_edit_rejects_unknown_key_and_field():
    controller = RowOverrideController(FakeGenerator(), processed_session())
    with pytest.raises(KeyError):
        controller.edit("nope", "Meta Title EN", "x")
    with pytest.raises(ValueError):
        controller.edit("p1", "name", "renamed")


def test_regenerate_success_overwrites_only_that_row():
    session = processed_session()
    generator = FakeGenerator()
    controller = RowOverrideController(generator, session)

    outcome = asyncio.run(controller.regenerate("p3", "x"))

    assert outcome.status == REGENERATE_OK
    assert outcome.tokens_used == 7
    assert generator.single_calls == ["p3"]
    assert session.find("p3").generated == generated_for("p3", tag="regen")
    assert session.find("p2").generated == generated_for("p2")
    assert controller.regenerating == set()


def test_regenerate_failure_is_isolated_to_the_row(store):
    session = processed_session(store)
    before = {p.key: copy.deepcopy(p) for p in session.processed_records}
    controller = RowOverrideController(FakeGenerator(single_error=GenerationFailed("boom")), session)

    outcome = asyncio.run(controller.regenerate("p2", "x"))

    assert outcome.status == REGENERATE_FAILED
    for p in session.processed_records:
        if p.key != "p2":
            assert p == before[p.key]
    failed = session.find("p2").generated
    assert failed["Meta Title EN"] == REGENERATE_FAILED_TITLE
    assert failed["Meta Title AR"] == REGENERATE_FAILED_TITLE
    assert failed["Meta Description EN"] == REGENERATE_FAILED_DESCRIPTION
    assert REGENERATE_FAILED_TITLE != NO_RESPONSE_TITLE
    assert controller.regenerating == set()
    assert store.load().processed_records[1].generated["Meta Title EN"] == REGENERATE_FAILED_TITLE


def test_regenerate_quota_leaves_row_unchanged():
    session = processed_session()
    before = copy.deepcopy(session.find("p1"))
    controller = RowOverrideController(FakeGenerator(single_error=QuotaExceeded("quota")), session)

    outcome = asyncio.run(controller.regenerate("p1", "x"))

    assert outcome.status == REGENERATE_QUOTA
    assert "Regeneration failed for SKU p1" in outcome.message
    assert session.error == outcome.message
    assert session.find("p1") == before
    assert controller.regenerating == set()


def test_regenerate_unknown_key():
    controller = RowOverrideController(FakeGenerator(), processed_session())
    with pytest.raises(KeyError):
        asyncio.run(controller.regenerate("nope", "x"))


def test_regenerate_refused_only_for_keys_in_the_chunk_in_flight():
    session = MetaSession()
    session.load_records("catalog.csv", make_records(20))
    session.merge({"p20": generated_for("p20")})

    async def scenario():
        gate = asyncio.Event()
        orchestrator = BatchOrchestrator(FakeGenerator(gate=gate), session)
        controller = RowOverrideController(FakeGenerator(), session, orchestrator)
        task = asyncio.create_task(orchestrator.resume("x"))
        await asyncio.sleep(0)

        assert orchestrator.owns("p1")
        with pytest.raises(RowBusy):
            await controller.regenerate("p1", "x")
        outcome = await controller.regenerate("p20", "x")

        gate.set()
        return outcome, await task

    outcome, result = asyncio.run(scenario())
    assert outcome.status == REGENERATE_OK
    assert result.state.value == "completed"
    assert session.find("p20").generated == generated_for("p20", tag="regen")
    assert len(session.processed_records) == 20


def test_key_is_marked_in_flight_until_the_call_returns():
    session = processed_session()
    own = FakeGenerator()
    controller = RowOverrideController(own, session)
    slow = BlockingGenerator()
    results = {}

    worker = threading.Thread(
        target=lambda: results.update(p1=asyncio.run(controller.regenerate("p1", "x", generator=slow))))
    worker.start()
    try:
        assert slow.entered.wait(5)
        assert "p1" in controller.regenerating
        assert controller.regenerating_keys() == ["p1"]

        with pytest.raises(RowBusy):
            asyncio.run(controller.regenerate("p1", "x", generator=FakeGenerator()))
        other = FakeGenerator()
        assert asyncio.run(controller.regenerate("p2", "x", generator=other)).status == REGENERATE_OK
        assert other.single_calls == ["p2"]
    finally:
        slow.release.set()
        worker.join(timeout=10)

    assert results["p1"].status == REGENERATE_OK
    assert slow.single_calls == ["p1"]
    assert own.single_calls == []
    assert controller.generator is own
    assert controller.regenerating == set()
    assert session.find("p1").generated == generated_for("p1", tag="regen")
