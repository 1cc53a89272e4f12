"""
Dispatch processor.

Runs one SendJob: deduplicates its targets, then delivers to each unique
target in order. A failing target is recorded and reported, never allowed to
stop the targets after it.
"""
import enum
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from msgrelay.database import AsyncSessionLocal
from msgrelay.exceptions import (
    CredentialsError,
    DispatchError,
    PermanentDispatchError,
    PlatformInactiveError,
    PlatformNotFoundError,
)
from msgrelay.logging_config import get_logger, mask_id
from msgrelay.models.webhook import WebhookEventType
from msgrelay.platforms.base import AdapterKey, SendResult
from msgrelay.platforms.envelope import UserRef, make_envelope
from msgrelay.platforms.registry import PlatformRegistry
from msgrelay.routes.metrics import track_target_failed, track_target_sent
from msgrelay.schemas import SendJob, Target
from msgrelay.services import crypto
from msgrelay.services.delivery_ledger import DeliveryLedger
from msgrelay.services.webhook_service import format_timestamp, iso_timestamp

log = get_logger(component="dispatch_processor")

ProgressCallback = Callable[[int], Awaitable[None]]

SYSTEM_USER = UserRef(provider_user_id="system", display="System")


class FailureKind(str, enum.Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


# Messages that describe configuration problems rather than outages
PERMANENT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"platform.*not found",
        r"configuration.*not found",
        r"access.*denied",
        r"platform.*disabled",
        r"invalid.*platform",
        r"credentials.*invalid",
        r"token.*invalid",
        r"platform.*inactive",
        r"provider.*not found",
    )
)


def classify(error: BaseException) -> FailureKind:
    """
    Classify a target failure.

    Typed permanent errors are checked first, then the error class name,
    then the message patterns. Anything unmatched is transient.
    """
    if isinstance(error, PermanentDispatchError):
        return FailureKind.PERMANENT

    name = type(error).__name__.lower()
    if "notfound" in name or "forbidden" in name:
        return FailureKind.PERMANENT

    message = str(error)
    if any(pattern.search(message) for pattern in PERMANENT_PATTERNS):
        return FailureKind.PERMANENT

    return FailureKind.TRANSIENT


def dedupe_targets(targets: list[Target]) -> tuple[list[Target], list[Target]]:
    """
    Split targets into unique ones (first occurrence order) and dropped duplicates.
    """
    seen = set()
    unique, duplicates = [], []
    for target in targets:
        key = target.key()
        if key in seen:
            duplicates.append(target)
        else:
            seen.add(key)
            unique.append(target)
    return unique, duplicates


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


@dataclass
class DispatchResult:
    """Aggregate outcome of one dispatch job."""
    total_targets: int
    unique_targets: int
    duplicates_removed: int
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    timestamp: str = field(default_factory=iso_timestamp)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def failure_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        return self.failure_count == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_targets": self.total_targets,
            "unique_targets": self.unique_targets,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "duplicates_removed": self.duplicates_removed,
            "results": self.results,
            "errors": self.errors,
            "timestamp": self.timestamp,
        }


def coerce_send_result(platform: str, value: Any) -> SendResult:
    """
    Normalize an adapter's return value.

    Accepts a SendResult or a mapping with "provider_message_id".

    Raises:
        DispatchError: If no provider message id can be read from `value`
    """
    if isinstance(value, SendResult):
        message_id = value.provider_message_id
    elif isinstance(value, Mapping):
        message_id = value.get("provider_message_id")
    else:
        message_id = getattr(value, "provider_message_id", None)

    if not message_id:
        raise DispatchError(f"Adapter for {platform} returned no provider message id")
    return value if isinstance(value, SendResult) else SendResult(provider_message_id=str(message_id))


def target_info(target: Target, platform: str) -> dict[str, str]:
    return {
        "platform_id": target.platform_id,
        "type": target.type,
        "id": target.id,
        "platform": platform,
    }


class DispatchProcessor:
    """
    Delivers SendJobs through the platform registry.

    Args:
        registry: Platform provider registry
        notifier: Object with `async notify(tenant_id, event, data)`
        session_factory: Async session factory for the delivery ledger
    """

    def __init__(self, registry: PlatformRegistry, notifier, session_factory=None):
        self.registry = registry
        self.notifier = notifier
        self._session_factory = session_factory or AsyncSessionLocal

    async def process(
        self,
        job_id: str,
        send_job: SendJob,
        on_progress: ProgressCallback | None = None,
    ) -> DispatchResult:
        """
        Deliver one job to all of its unique targets.

        Targets already marked sent for this job (by an earlier attempt of
        the same job) are reported as successes without being sent again.
        """
        unique, duplicates = dedupe_targets(send_job.targets)
        for duplicate in duplicates:
            log.warning(
                "duplicate_target_removed",
                job_id=job_id,
                platform_id=mask_id(duplicate.platform_id),
                target_type=duplicate.type,
                target_id=mask_id(duplicate.id)
            )

        result = DispatchResult(
            total_targets=len(send_job.targets),
            unique_targets=len(unique),
            duplicates_removed=len(duplicates),
        )

        log.info(
            "dispatch_started",
            job_id=job_id,
            tenant_id=send_job.tenant_id,
            total_targets=result.total_targets,
            unique_targets=result.unique_targets,
            duplicates_removed=result.duplicates_removed
        )

        async with self._session_factory() as db:
            ledger = DeliveryLedger(db)
            # Plain values; a rollback later in the loop expires loaded rows
            already_sent = {
                key: (attempt.platform, attempt.provider_message_id)
                for key, attempt in (await ledger.get_sent_attempts(job_id)).items()
            }

            for index, target in enumerate(unique, start=1):
                previous = already_sent.get(target.key())
                if previous is not None:
                    log.info(
                        "target_already_sent",
                        job_id=job_id,
                        platform_id=mask_id(target.platform_id),
                        target_id=mask_id(target.id)
                    )
                    result.results.append({
                        "target": target_info(target, previous[0]),
                        "provider_message_id": previous[1],
                        "already_sent": True,
                        "timestamp": iso_timestamp(),
                    })
                else:
                    await self._deliver(ledger, job_id, send_job, target, result)

                if on_progress is not None:
                    await self._report_progress(on_progress, job_id, index * 100 // len(unique))

        log.info(
            "dispatch_finished",
            job_id=job_id,
            tenant_id=send_job.tenant_id,
            success_count=result.success_count,
            failure_count=result.failure_count,
            unique_targets=result.unique_targets
        )
        return result

    async def _deliver(
        self,
        ledger: DeliveryLedger,
        job_id: str,
        send_job: SendJob,
        target: Target,
        result: DispatchResult,
    ) -> None:
        tenant_id = send_job.tenant_id
        platform = "unknown"
        attempt_id = None

        try:
            config = await ledger.get_platform_config(target.platform_id, tenant_id)
            if config is None:
                raise PlatformNotFoundError(
                    f"Platform configuration not found or access denied for {target.platform_id}"
                )
            platform = config.platform
            if not config.is_active:
                raise PlatformInactiveError(
                    f"Platform configuration '{target.platform_id}' is inactive"
                )

            try:
                credentials = json.loads(crypto.decrypt(config.credentials_encrypted))
            except ValueError as e:
                # JSONDecodeError is a ValueError too
                raise CredentialsError(
                    f"Stored credentials invalid for platform {target.platform_id}"
                ) from e
            if not isinstance(credentials, dict):
                raise CredentialsError(f"Stored credentials invalid for platform {target.platform_id}")

            adapter = await self.registry.get_or_create_adapter(
                platform,
                AdapterKey(tenant_id, target.platform_id),
                {**credentials, "webhook_token": config.webhook_token},
            )

            content = send_job.content
            attempt = await ledger.create_attempt(
                tenant_id=tenant_id,
                job_id=job_id,
                platform_id=target.platform_id,
                platform=platform,
                target_type=target.type,
                target_chat_id=target.id,
                message_text=content.text,
                message_content=content.model_dump(mode="json"),
            )
            attempt_id = attempt.id

            envelope = make_envelope(
                channel=platform,
                tenant_id=tenant_id,
                thread_id=target.id,
                user=SYSTEM_USER,
                message={"text": content.text},
                provider={
                    "event_id": f"job-{job_id}-{platform}-{target.id}",
                    "raw": {
                        "platform_id": target.platform_id,
                        **send_job.metadata.model_dump(exclude_none=True),
                    },
                },
            )
            reply = {
                "subject": content.subject,
                "text": content.text,
                "markdown": content.markdown,
                "html": content.html,
                "attachments": content.attachments,
                "buttons": content.buttons,
                "embeds": content.embeds,
                "platform_options": content.platform_options,
                "thread_id": target.id,
                "reply_to": send_job.options.reply_to,
                "silent": send_job.options.silent,
            }
            sent = coerce_send_result(platform, await adapter.send_message(envelope, reply))
        except Exception as e:
            await self._record_failure(ledger, job_id, tenant_id, target, platform, attempt_id, e, result)
            return

        log.info(
            "target_sent",
            job_id=job_id,
            platform=platform,
            platform_id=mask_id(target.platform_id),
            target_type=target.type,
            target_id=mask_id(target.id),
            provider_message_id=sent.provider_message_id
        )
        track_target_sent(platform)

        try:
            updated = await ledger.mark_sent(attempt_id, sent.provider_message_id)
            await self.notifier.notify(tenant_id, WebhookEventType.MESSAGE_SENT, {
                "message_id": attempt_id,
                "job_id": job_id,
                "platform": platform,
                "platform_id": target.platform_id,
                "target": {
                    "type": target.type,
                    "chat_id": target.id,
                    "user_id": target.id if target.type == "user" else None,
                },
                "text": send_job.content.text,
                "sent_at": format_timestamp(updated.sent_at) if updated and updated.sent_at else iso_timestamp(),
            })
        except Exception as e:
            await ledger.db.rollback()
            log.error("sent_status_update_failed", job_id=job_id, attempt_id=attempt_id, error=str(e))

        result.results.append({
            "target": target_info(target, platform),
            "provider_message_id": sent.provider_message_id,
            "already_sent": False,
            "timestamp": iso_timestamp(),
        })

    async def _record_failure(
        self,
        ledger: DeliveryLedger,
        job_id: str,
        tenant_id: str,
        target: Target,
        platform: str,
        attempt_id: str | None,
        error: Exception,
        result: DispatchResult,
    ) -> None:
        kind = classify(error)
        message = error_message(error)

        log.error(
            "target_failed",
            job_id=job_id,
            platform=platform,
            platform_id=mask_id(target.platform_id),
            target_type=target.type,
            target_id=mask_id(target.id),
            failure_kind=kind.value,
            error=message
        )
        track_target_failed(platform, kind.value)

        try:
            # Session may hold a failed flush from the step that raised
            await ledger.db.rollback()
            if attempt_id is not None:
                await ledger.mark_failed(attempt_id, message)
            else:
                await ledger.fail_pending_for_target(job_id, target.platform_id, target.id, message)
            await self.notifier.notify(tenant_id, WebhookEventType.MESSAGE_FAILED, {
                "job_id": job_id,
                "platform": platform,
                "platform_id": target.platform_id,
                "target": {
                    "type": target.type,
                    "chat_id": target.id,
                },
                "error": message,
                "failed_at": iso_timestamp(),
            })
        except Exception as e:
            await ledger.db.rollback()
            log.error("failed_status_update_failed", job_id=job_id, attempt_id=attempt_id, error=str(e))

        result.errors.append({
            "target": target_info(target, platform),
            "error": message,
            "permanent": kind is FailureKind.PERMANENT,
            "timestamp": iso_timestamp(),
        })

    async def _report_progress(self, on_progress: ProgressCallback, job_id: str, percent: int) -> None:
        try:
            await on_progress(percent)
        except Exception as e:
            log.warning("progress_update_failed", job_id=job_id, error=str(e))
