#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Single-row edits and regenerations, independent of bulk jobs.

Both only ever touch the row with the requested sku. A quota error on
regenerate leaves the row as it was; any other failure writes the
regeneration-failed placeholder into that row's generated fields.
"""

import threading
from dataclasses import dataclass
from typing import List, Optional, Set

from batch_orchestrator import BatchOrchestrator, MetaSession
from meta_generation import (GenerationFailed, MetaGenerator, QuotaExceeded,
                             REGENERATE_FAILED_DESCRIPTION, REGENERATE_FAILED_TITLE)
from seo_utils import get_logger

logger = get_logger("overrides")

REGENERATE_OK = "ok"
REGENERATE_QUOTA = "quota_exceeded"
REGENERATE_FAILED = "failed"


def regenerate_quota_message(key: str) -> str:
    return (f"Daily token limit reached. Regeneration failed for SKU {key}. "
            "Please try again later when your quota resets (midnight UTC).")


class RowBusy(RuntimeError):
    """The row is already being written by a bulk chunk or another regenerate."""


@dataclass
class RegenerateOutcome:
    key: str
    status: str
    message: Optional[str] = None
    tokens_used: int = 0


class RowOverrideController:

    def __init__(self, generator: MetaGenerator, session: MetaSession,
                 orchestrator: Optional[BatchOrchestrator] = None):
        self.generator = generator
        self.session = session
        self.orchestrator = orchestrator
        self.regenerating: Set[str] = set()
        self._claim_lock = threading.Lock()

    def regenerating_keys(self) -> List[str]:
        with self._claim_lock:
            return sorted(self.regenerating)

    def edit(self, key: str, field: str, value: str) -> bool:
        """
        Set one generated field of one row. Returns False (and writes nothing)
        when the value is already there.
        """
        current = self.session.find(key)
        if current is None:
            raise KeyError(f"No processed product with SKU {key}")
        if field not in self.generator.profile.columns and field not in current.generated:
            raise ValueError(f"'{field}' is not an editable generated field")

        changed = self.session.update_generated(key, {field: str(value)})
        if changed:
            self.session.persist()
        return changed

    async def regenerate(self, key: str, instructions: str,
                         generator: Optional[MetaGenerator] = None) -> RegenerateOutcome:
        """
        Regenerate one row. ``generator`` overrides the controller's own for this
        call only, so each caller can bring a client bound to its event loop.
        """
        generator = generator or self.generator
        with self._claim_lock:
            if self.orchestrator is not None and self.orchestrator.owns(key):
                raise RowBusy(f"SKU {key} is part of the batch currently being generated.")
            if key in self.regenerating:
                raise RowBusy(f"SKU {key} is already being regenerated.")
            current = self.session.find(key)
            if current is None:
                raise KeyError(f"No processed product with SKU {key}")
            self.regenerating.add(key)

        self.session.error = None
        try:
            outcome = await generator.generate_one(current, instructions)
        except QuotaExceeded as e:
            logger.warning(f"[{key}] regenerate hit quota: {e.detail}")
            message = regenerate_quota_message(key)
            self.session.error = message
            return RegenerateOutcome(key, REGENERATE_QUOTA, message)
        except GenerationFailed as e:
            logger.error(f"[{key}] regenerate failed: {e.detail}")
            placeholder = generator.profile.sentinel(REGENERATE_FAILED_TITLE, REGENERATE_FAILED_DESCRIPTION)
            self.session.update_generated(key, placeholder)
            self.session.persist()
            return RegenerateOutcome(key, REGENERATE_FAILED, e.detail)
        finally:
            with self._claim_lock:
                self.regenerating.discard(key)

        self.session.update_generated(key, outcome.result)
        self.session.persist()
        logger.info(f"[{key}] regenerated ({outcome.tokens_used} tokens)")
        return RegenerateOutcome(key, REGENERATE_OK, tokens_used=outcome.tokens_used)
