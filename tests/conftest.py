import asyncio
import json
import threading
from types import SimpleNamespace

import pytest

from meta_generation import BILINGUAL, BatchOutcome, SingleOutcome
from product_records import Record
from session_store import MemoryBlobStore, SessionStore


def make_records(n, prefix="p"):
    return [Record({"sku": f"{prefix}{i}", "name": f"Product {i}", "color": "red"}) for i in range(1, n + 1)]


def generated_for(key, profile=BILINGUAL, tag="gen"):
    return {col: f"{tag}:{col}:{key}" for col in profile.columns}


class FakeGenerator:
    """Scripted stand-in for MetaGenerator. ``failures`` maps 1-based call number -> exception."""

    def __init__(self, profile=BILINGUAL, failures=None, single_error=None, tokens=10, on_call=None, gate=None):
        self.gate = gate
        self.profile = profile
        self.failures = failures or {}
        self.single_error = single_error
        self.tokens = tokens
        self.on_call = on_call
        self.batch_calls = []
        self.single_calls = []

    async def generate_batch(self, records, instructions):
        self.batch_calls.append([r.key for r in records])
        if self.on_call is not None:
            self.on_call(len(self.batch_calls))
        if self.gate is not None:
            await self.gate.wait()
        error = self.failures.get(len(self.batch_calls))
        if error is not None:
            raise error
        return BatchOutcome({r.key: generated_for(r.key, self.profile) for r in records}, self.tokens)

    async def generate_one(self, record, instructions):
        self.single_calls.append(record.key)
        if self.single_error is not None:
            raise self.single_error
        return SingleOutcome(generated_for(record.key, self.profile, tag="regen"), 7)


class BlockingGenerator(FakeGenerator):
    """Holds every call until ``release`` is set, whichever thread or loop it runs on."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    async def _hold(self):
        self.entered.set()
        await asyncio.get_running_loop().run_in_executor(None, self.release.wait, 10)

    async def generate_batch(self, records, instructions):
        await self._hold()
        return await super().generate_batch(records, instructions)

    async def generate_one(self, record, instructions):
        await self._hold()
        return await super().generate_one(record, instructions)


class CountingBlobStore(MemoryBlobStore):
    def __init__(self):
        super().__init__()
        self.writes = 0

    def set(self, name, value):
        self.writes += 1
        super().set(name, value)


class StubCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        content = item if isinstance(item, str) else json.dumps(item, ensure_ascii=False)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(total_tokens=123),
        )


class StubOpenAI:
    def __init__(self, responses):
        self.chat = SimpleNamespace(completions=StubCompletions(responses))

    @property
    def calls(self):
        return self.chat.completions.calls


@pytest.fixture
def blobs():
    return CountingBlobStore()


@pytest.fixture
def store(blobs):
    return SessionStore(blobs)
