"""
Webhook subscription planning and reconciliation.

The directory limits how many phone-number ids a single webhook may watch,
so the ids we need covered are split into fixed-size chunks, one webhook per
chunk slot. ``plan_subscriptions`` diffs the required chunks against what is
registered, slot by slot:

- slot has no webhook                      -> create
- slot has a webhook with the same ids     -> keep
- slot has a webhook with different ids    -> update (same id and key)
- webhook in a slot we no longer need      -> delete

Slots are never renumbered, so an unchanged chunk keeps its webhook id and
signing key. ``WebhookReconciler`` applies a plan one operation at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from config import settings
from services.directory_api import DirectoryAPIError, DirectoryClient, DirectoryRateLimitError
from services.mapping_store import SubscriptionStore

logger = logging.getLogger(__name__)

EVENT_KINDS: tuple[str, ...] = ("message", "call", "call_summary")

_KIND_LABELS: dict[str, str] = {
    "message": "Messages",
    "call": "Calls",
    "call_summary": "Call Summaries",
}


# ---------------------------------------------------------------------------
# Plan types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExistingSubscription:
    chunk_index: int
    webhook_id: str
    phone_ids: tuple[str, ...]
    webhook_key: Optional[str] = None


@dataclass(frozen=True)
class CreateOp:
    chunk_index: int
    phone_ids: tuple[str, ...]


@dataclass(frozen=True)
class UpdateOp:
    chunk_index: int
    webhook_id: str
    webhook_key: Optional[str]
    phone_ids: tuple[str, ...]


@dataclass(frozen=True)
class DeleteOp:
    chunk_index: int
    webhook_id: str
    reason: str = "chunk_no_longer_needed"


@dataclass
class SubscriptionPlan:
    create: list[CreateOp] = field(default_factory=list)
    update: list[UpdateOp] = field(default_factory=list)
    delete: list[DeleteOp] = field(default_factory=list)
    keep: list[ExistingSubscription] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.create or self.update or self.delete)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def chunk_resource_ids(resource_ids: Iterable[str], size: int) -> list[tuple[str, ...]]:
    """Split ids into ordered chunks of at most ``size``, dropping repeats."""
    if size < 1:
        raise ValueError("chunk size must be positive")

    unique: list[str] = []
    seen: set[str] = set()
    for resource_id in resource_ids:
        if resource_id not in seen:
            seen.add(resource_id)
            unique.append(resource_id)

    return [tuple(unique[i:i + size]) for i in range(0, len(unique), size)]


def plan_subscriptions(
    required_chunks: Sequence[Sequence[str]],
    existing: Sequence[ExistingSubscription],
) -> SubscriptionPlan:
    """Minimal create/update/delete/keep plan, keyed by chunk index."""
    plan = SubscriptionPlan()

    by_index: dict[int, ExistingSubscription] = {}
    for subscription in sorted(existing, key=lambda s: s.chunk_index):
        if subscription.chunk_index in by_index:
            # Two webhooks claiming one slot: the first one keeps it
            plan.delete.append(
                DeleteOp(subscription.chunk_index, subscription.webhook_id, reason="duplicate_chunk")
            )
            continue
        by_index[subscription.chunk_index] = subscription

    for index, chunk in enumerate(required_chunks):
        phone_ids = tuple(chunk)
        current = by_index.get(index)
        if current is None:
            plan.create.append(CreateOp(index, phone_ids))
        elif set(current.phone_ids) == set(phone_ids):
            plan.keep.append(current)
        else:
            plan.update.append(
                UpdateOp(index, current.webhook_id, current.webhook_key, phone_ids)
            )

    for index, subscription in by_index.items():
        if index >= len(required_chunks):
            plan.delete.append(DeleteOp(index, subscription.webhook_id))

    return plan


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass
class ReconcileResult:
    success_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    plans: dict[str, SubscriptionPlan] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": self.errors,
            "plans": {
                kind: {
                    "create": len(plan.create),
                    "update": len(plan.update),
                    "delete": len(plan.delete),
                    "keep": len(plan.keep),
                }
                for kind, plan in self.plans.items()
            },
        }


def webhook_url_for(integration_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/webhooks/directory/{integration_id}"


class WebhookReconciler:
    """Applies subscription plans for one integration.

    Not safe to run concurrently with itself for the same integration; the
    Celery task that calls it is the only writer.
    """

    def __init__(
        self,
        integration_id: str,
        directory: DirectoryClient,
        store: Optional[SubscriptionStore] = None,
        chunk_size: Optional[int] = None,
        webhook_url: Optional[str] = None,
    ) -> None:
        self.integration_id = integration_id
        self.directory = directory
        self.store = store or SubscriptionStore(integration_id)
        self.chunk_size = chunk_size or settings.MAX_RESOURCE_IDS_PER_WEBHOOK
        self.webhook_url = webhook_url or webhook_url_for(integration_id)

    async def sync_phone_webhooks(
        self,
        phone_ids: Iterable[str],
        kinds: Sequence[str] = EVENT_KINDS,
    ) -> ReconcileResult:
        required = chunk_resource_ids(phone_ids, self.chunk_size)
        result = ReconcileResult()

        for kind in kinds:
            existing = [
                ExistingSubscription(
                    chunk_index=s.chunk_index,
                    webhook_id=s.webhook_id,
                    phone_ids=tuple(s.phone_ids or []),
                    webhook_key=s.webhook_key,
                )
                for s in await self.store.get_all(kind)
            ]
            plan = plan_subscriptions(required, existing)
            result.plans[kind] = plan

            logger.info(
                "[webhooks] %s plan for integration %s: create=%d update=%d delete=%d keep=%d",
                kind, self.integration_id,
                len(plan.create), len(plan.update), len(plan.delete), len(plan.keep),
            )
            await self._apply(kind, plan, result)

        return result

    async def _apply(self, kind: str, plan: SubscriptionPlan, result: ReconcileResult) -> None:
        for op in plan.create:
            try:
                created = await self.directory.create_webhook(
                    kind,
                    self.webhook_url,
                    list(op.phone_ids),
                    label=f"Directory Sync - {_KIND_LABELS[kind]} #{op.chunk_index}",
                )
                webhook_id = created.get("id")
                if not webhook_id:
                    raise DirectoryAPIError(f"Webhook create for {kind} returned no id")
                await self.store.save(kind, op.chunk_index, webhook_id, created.get("key"), list(op.phone_ids))
                result.success_count += 1
            except DirectoryRateLimitError:
                raise
            except DirectoryAPIError as exc:
                self._record_error(result, kind, op.chunk_index, None, exc)

        for op in plan.update:
            try:
                await self.directory.update_webhook(op.webhook_id, list(op.phone_ids))
                await self.store.save(kind, op.chunk_index, op.webhook_id, op.webhook_key, list(op.phone_ids))
                result.success_count += 1
            except DirectoryRateLimitError:
                raise
            except DirectoryAPIError as exc:
                self._record_error(result, kind, op.chunk_index, op.webhook_id, exc)

        for op in plan.delete:
            try:
                try:
                    await self.directory.delete_webhook(op.webhook_id)
                except DirectoryAPIError as exc:
                    if not exc.is_not_found:
                        raise
                    logger.info("[webhooks] Webhook %s already gone", op.webhook_id)
                await self.store.remove(kind, op.chunk_index)
                result.success_count += 1
            except DirectoryRateLimitError:
                raise
            except DirectoryAPIError as exc:
                self._record_error(result, kind, op.chunk_index, op.webhook_id, exc)

    def _record_error(
        self,
        result: ReconcileResult,
        kind: str,
        chunk_index: int,
        webhook_id: Optional[str],
        exc: Exception,
    ) -> None:
        logger.warning(
            "[webhooks] %s chunk %d failed for integration %s: %s",
            kind, chunk_index, self.integration_id, exc,
        )
        result.error_count += 1
        result.errors.append({
            "event_kind": kind,
            "chunk_index": chunk_index,
            "webhook_id": webhook_id,
            "error": str(exc),
        })
