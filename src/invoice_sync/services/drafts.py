"""
Draft persistence for the invoice form.

An unsaved invoice form survives reload or crash: every change is written,
after a debounce delay, under a key scoped to the active business. Drafts
never go through the outbox and are deleted on submit or explicit reset.

A draft is only ever offered to the business it was saved for.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from invoice_sync.local_store import LocalStoreError

if TYPE_CHECKING:
    from invoice_sync.local_store import LocalStore
    from invoice_sync.services.mutations import MutationService
    from invoice_sync.services.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class Draft:
    """A saved in-progress invoice (header plus unsaved line items)."""

    business_id: str
    invoice: dict[str, Any]
    saved_at: str


class DraftStore:
    """One draft per business, stored in the local store's `drafts` table."""

    def __init__(self, store: LocalStore):
        self.store = store

    def save(self, business_id: str, invoice: dict[str, Any]) -> Draft:
        """Create or overwrite the draft for a business."""
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO drafts (business_id, invoice_json, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(business_id) DO UPDATE SET
                    invoice_json = excluded.invoice_json,
                    saved_at = excluded.saved_at
            """,
                (business_id, json.dumps(invoice), now),
            )
        return Draft(business_id=business_id, invoice=invoice, saved_at=now)

    def load(self, business_id: str) -> Draft | None:
        """Get the draft for a business, or None."""
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM drafts WHERE business_id = ?", (business_id,)
            ).fetchone()
        if row is None:
            return None

        invoice = json.loads(row["invoice_json"])
        owner = invoice.get("businessId")
        if owner is not None and owner != business_id:
            logger.warning(
                "Ignoring draft stored for business %s: it belongs to business %s",
                business_id,
                owner,
            )
            return None

        return Draft(business_id=row["business_id"], invoice=invoice, saved_at=row["saved_at"])

    def delete(self, business_id: str) -> bool:
        """Delete the draft for a business. Returns True if one existed."""
        with self.store.transaction() as conn:
            cursor = conn.execute("DELETE FROM drafts WHERE business_id = ?", (business_id,))
            return cursor.rowcount > 0


class DraftAutosaver:
    """
    Debounced autosave of the invoice form for one business.

    Call on_change() with the full form state on every edit; the latest
    state is written once the form has been quiet for `delay` seconds.
    """

    def __init__(
        self,
        drafts: DraftStore,
        scheduler: Scheduler,
        business_id: str,
        delay: float = 2.0,
    ):
        self.drafts = drafts
        self.scheduler = scheduler
        self.business_id = business_id
        self.delay = delay
        # Guards _latest and _timer; timers fire on another thread with ThreadingScheduler
        self._lock = threading.Lock()
        self._latest: dict[str, Any] | None = None
        self._timer: TimerHandle | None = None

    @property
    def has_unsaved_changes(self) -> bool:
        return self._latest is not None

    def restore(self) -> dict[str, Any] | None:
        """Form state to start from: the saved draft, or None for a blank form."""
        draft = self.drafts.load(self.business_id)
        return draft.invoice if draft else None

    def on_change(self, invoice: dict[str, Any]) -> None:
        """Record the current form state and (re)start the debounce timer."""
        snapshot = copy.deepcopy(invoice)
        with self._lock:
            self._latest = snapshot
            self._cancel_timer()
            self._timer = self.scheduler.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        try:
            self.flush()
        except LocalStoreError as e:
            logger.error("Draft autosave failed for business %s: %s", self.business_id, e)

    def flush(self) -> bool:
        """
        Write pending changes now. Returns True if something was written.

        A change recorded while the write is in progress stays pending and is
        written by its own timer. On failure the unwritten state is kept unless
        a newer one has arrived meanwhile.
        """
        with self._lock:
            self._cancel_timer()
            latest, self._latest = self._latest, None
        if latest is None:
            return False

        try:
            self.drafts.save(self.business_id, latest)
        except Exception:
            with self._lock:
                if self._latest is None:
                    self._latest = latest
            raise

        logger.debug("Draft saved for business %s", self.business_id)
        return True

    def discard(self) -> None:
        """Drop pending changes and the stored draft ("start new")."""
        with self._lock:
            self._cancel_timer()
            self._latest = None
        self.drafts.delete(self.business_id)

    def submit(
        self,
        mutations: MutationService,
        invoice: dict[str, Any],
        line_items: list[dict[str, Any]],
    ) -> str:
        """Commit the form through the mutation path, then delete the draft."""
        key = mutations.save_invoice(invoice, line_items)
        self.discard()
        return key

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
