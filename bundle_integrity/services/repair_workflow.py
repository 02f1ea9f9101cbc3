"""
Operator-confirmed repair of multiple-choice answers.

State machine per bundle: IDLE -> REVIEWING -> APPLYING -> IDLE.
- open_review: fresh ValidationIndex; best guesses start unselected.
- toggle / select: edit the selection (current candidates only).
- apply: one batched request under the bundle lock. A write failure goes back
  to REVIEWING with `last_error` set; once the write lands the session is
  IDLE, then the bundle is re-read and every candidate recomputed. A failed
  re-read leaves IDLE with `last_error` set.

A review is bound to the bundle's write generation at open time. Any record
write in between (edit, ingest, another repair) makes apply refuse and drop
the stale candidates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from bundle_integrity.core.integrity import default_selection
from bundle_integrity.models.schemas import FixCandidate
from bundle_integrity.services.bundle_service import BundleService, BundleSnapshot
from bundle_integrity.utils.errors import (
    InvalidTransitionError,
    RecordNotFoundError,
)
from bundle_integrity.utils.metrics import Timer, inc_counter, observe_histogram
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)


class RepairState(str, Enum):
    IDLE = "idle"
    REVIEWING = "reviewing"
    APPLYING = "applying"


@dataclass
class ApplyOutcome:
    applied_ids: List[str]
    snapshot: BundleSnapshot


@dataclass
class RepairSession:
    service: BundleService
    bundle_id: str
    state: RepairState = RepairState.IDLE
    candidates: List[FixCandidate] = field(default_factory=list)
    selected: Set[str] = field(default_factory=set)
    last_error: Optional[str] = None
    last_applied: List[str] = field(default_factory=list)
    generation: int = 0

    def _require(self, *allowed: RepairState, action: str) -> None:
        if self.state not in allowed:
            raise InvalidTransitionError(
                f"cannot {action} while repair session for {self.bundle_id} is {self.state.value}"
            )

    def _candidate_ids(self) -> Set[str]:
        return {c.record_id for c in self.candidates}

    def _check_known(self, ids: Iterable[str]) -> List[str]:
        known = self._candidate_ids()
        wanted = [str(i) for i in ids]
        unknown = [i for i in wanted if i not in known]
        if unknown:
            raise RecordNotFoundError(
                f"not a current fix candidate: {', '.join(sorted(set(unknown)))}"
            )
        return wanted

    async def open_review(self) -> "RepairSession":
        self._require(RepairState.IDLE, RepairState.REVIEWING, action="open review")
        generation = self.service.write_generation(self.bundle_id)
        snapshot = await self.service.revalidate(self.bundle_id)
        self.candidates = list(snapshot.index.fix_candidates)
        self.selected = default_selection(self.candidates)
        self.generation = generation
        self.last_error = None
        self.state = RepairState.REVIEWING
        log_event(
            logger,
            "repair_review_opened",
            bundle_id=self.bundle_id,
            candidates=len(self.candidates),
            preselected=len(self.selected),
        )
        return self

    def toggle(self, record_id: str) -> Set[str]:
        self._require(RepairState.REVIEWING, action="change selection")
        (rid,) = self._check_known([record_id])
        if rid in self.selected:
            self.selected.discard(rid)
        else:
            self.selected.add(rid)
        return set(self.selected)

    def select(self, record_ids: Iterable[str]) -> Set[str]:
        self._require(RepairState.REVIEWING, action="change selection")
        self.selected = set(self._check_known(record_ids))
        return set(self.selected)

    async def apply(self, record_ids: Optional[Iterable[str]] = None) -> ApplyOutcome:
        self._require(RepairState.REVIEWING, action="apply repairs")
        if record_ids is not None:
            self.select(record_ids)
        chosen = [c for c in self.candidates if c.record_id in self.selected]
        if not chosen:
            raise InvalidTransitionError("no fix candidates selected; nothing to apply")
        answers = {c.record_id: c.suggested_answer for c in chosen}

        timer = Timer()
        async with self.service.locks.hold(self.bundle_id, purpose="repair"):
            if self.service.write_generation(self.bundle_id) != self.generation:
                message = "bundle changed since the review was opened; reopen the review"
                self.candidates = []
                self.selected = set()
                self.last_error = message
                self.state = RepairState.IDLE
                inc_counter("repair_apply_total", labels={"result": "stale"})
                log_event(
                    logger,
                    "repair_apply_stale",
                    level="warning",
                    bundle_id=self.bundle_id,
                    selected=len(answers),
                )
                raise InvalidTransitionError(message)

            self.state = RepairState.APPLYING
            try:
                await self.service.apply_answers(self.bundle_id, answers)
            except Exception as e:
                self.state = RepairState.REVIEWING
                self.last_error = str(e) or e.__class__.__name__
                inc_counter("repair_apply_total", labels={"result": "failed"})
                log_event(
                    logger,
                    "repair_apply_failed",
                    level="warning",
                    bundle_id=self.bundle_id,
                    selected=len(answers),
                    error_type=e.__class__.__name__,
                    error=str(e),
                )
                raise
            # Written: old candidates no longer describe the bundle.
            self.state = RepairState.IDLE
            self.candidates = []
            self.selected = set()
            self.last_error = None
            self.last_applied = sorted(answers)
        inc_counter("repair_apply_total", labels={"result": "ok"})

        try:
            snapshot = await self.service.revalidate(self.bundle_id)
        except Exception as e:
            self.last_error = f"repairs applied; revalidation failed: {e}"
            log_event(
                logger,
                "repair_revalidate_failed",
                level="warning",
                bundle_id=self.bundle_id,
                applied=len(answers),
                error_type=e.__class__.__name__,
                error=str(e),
            )
            raise
        self.candidates = list(snapshot.index.fix_candidates)
        self.selected = default_selection(self.candidates)
        observe_histogram(
            "repair_apply_seconds",
            value=timer.elapsed_seconds(),
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )
        log_event(
            logger,
            "repair_applied",
            bundle_id=self.bundle_id,
            applied=len(answers),
            remaining_candidates=len(self.candidates),
            invalid=len(snapshot.index.invalid_ids),
        )
        return ApplyOutcome(applied_ids=list(self.last_applied), snapshot=snapshot)

    def view(self) -> Dict[str, Any]:
        return {
            "bundle_id": self.bundle_id,
            "state": self.state.value,
            "candidates": [c.model_dump(mode="json") for c in self.candidates],
            "selected_ids": sorted(self.selected),
            "last_error": self.last_error,
            "last_applied": list(self.last_applied),
        }


def get_repair_session(service: BundleService, bundle_id: str) -> RepairSession:
    session = service.repair_sessions.get(bundle_id)
    if session is None:
        session = RepairSession(service=service, bundle_id=bundle_id)
        service.repair_sessions[bundle_id] = session
    return session
