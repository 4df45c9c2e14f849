"""
Best-effort post-commit actions and the collaborator interfaces they call.

After a quote transition commits, follow-ups (fairness timestamp, quote
PDF + e-mail, event emission) run one by one.  Each is independently
fallible: a failure is logged with its traceback and the next action
still runs.  The primary transition is never rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

from charterbook.domain.entities import Quote

logger = logging.getLogger(__name__)


# ── Collaborators ─────────────────────────────────────────────────────


class QuoteDocumentRenderer(Protocol):
    async def render_quote(self, quote: Quote) -> bytes: ...


class QuoteMailer(Protocol):
    async def send_quote(self, quote: Quote, document: bytes) -> None: ...


class EventEmitter(Protocol):
    async def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingDocumentRenderer:
    """Stand-in renderer for local runs; produces a plain-text summary."""

    async def render_quote(self, quote: Quote) -> bytes:
        total = quote.pricing.total if quote.pricing else 0.0
        return f"Quote {quote.id}: total {total:.2f}".encode()


class LoggingMailer:
    async def send_quote(self, quote: Quote, document: bytes) -> None:
        logger.info("Quote %s e-mail queued (%d bytes)", quote.id, len(document))


class LoggingEventEmitter:
    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("event %s %s", event, payload)


# ── Post-commit runner ────────────────────────────────────────────────


@dataclass(frozen=True)
class PostCommitAction:
    name: str
    run: Callable[[], Awaitable[Any]]


async def run_post_commit(actions: Sequence[PostCommitAction]) -> list[str]:
    """Run every action; return the names of those that failed."""
    failed: list[str] = []
    for action in actions:
        try:
            await action.run()
        except Exception:
            logger.exception("Post-commit action %r failed", action.name)
            failed.append(action.name)
    return failed
