"""Settlement orchestrator: charge each user's unpaid usage and record the outcome.

Users are settled concurrently, each in its own session. Within one user the
steps are strictly sequential:

1. resolve the default credential
2. total unpaid minutes (zero -> skipped)
3. claim the unpaid closed intervals (committed)
4. charge the gateway with a bounded timeout
5. append one ledger entry (committed)
6. on success, mark the claimed intervals paid in one batch (committed);
   on a decline or error, release the claim; on a timeout the processor
   outcome is unknown, so the claim stays for reconciliation
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metered_billing import metrics
from metered_billing.adapters.gateway import ChargeCredential, ChargeResult, PaymentGateway
from metered_billing.config import Settings, settings as default_settings
from metered_billing.exceptions import (
    BillingError,
    ErrorCode,
    GatewayError,
    NoDefaultPaymentMethod,
    PersistenceError,
    ValidationError,
    VaultError,
)
from metered_billing.models.base import utcnow
from metered_billing.models.ledger_entry import LedgerOutcome
from metered_billing.schemas.settlement import SettlementReport, SettlementStatus, UserSettlementResult
from metered_billing.services.credential_service import CredentialService
from metered_billing.services.ledger_service import LedgerService
from metered_billing.services.usage_service import UsageService
from metered_billing.tracing import get_tracer
from metered_billing.utils.currency import format_amount_for_currency, usage_amount
from metered_billing.vault import CredentialVault

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


def normalize_user_ids(user_ids: Any) -> list[UUID]:
    """
    Validate and de-duplicate the ids of a settlement run, keeping first-seen order.

    Raises:
        ValidationError: If the collection is empty or holds a non-UUID value
    """
    if user_ids is None or isinstance(user_ids, (str, bytes)):
        raise ValidationError("user_ids must be a collection of user UUIDs")

    try:
        candidates = list(user_ids)
    except TypeError:
        raise ValidationError("user_ids must be a collection of user UUIDs") from None

    if not candidates:
        raise ValidationError("user_ids must not be empty")

    normalized = []
    for candidate in candidates:
        if isinstance(candidate, UUID):
            normalized.append(candidate)
            continue
        try:
            if not isinstance(candidate, str):
                raise ValueError(candidate)
            normalized.append(UUID(candidate))
        except ValueError:
            raise ValidationError(
                f"Invalid user id {candidate!r}",
                context={"user_id": repr(candidate)},
            ) from None

    return list(dict.fromkeys(normalized))


class SettlementService:
    """Settles unpaid usage for a batch of users."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        gateway: PaymentGateway,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize settlement service."""
        self.session_factory = session_factory
        self.vault = vault
        self.gateway = gateway
        self.config = config or default_settings
        self.clock = clock

    async def settle(
        self,
        user_ids: Iterable[UUID],
        note: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SettlementReport:
        """
        Settle unpaid usage for every given user.

        Per-user failures are reported, never raised. Setting cancel_event
        stops dispatching users that have not started yet; they are reported
        as cancelled while in-flight users finish.

        Args:
            user_ids: Users to settle; duplicates are settled once
            note: Free-text note recorded on every ledger entry of the run
            cancel_event: Cancellation signal (optional)

        Returns:
            Report with one result per distinct user

        Raises:
            ValidationError: If user_ids is empty or holds a non-UUID value
        """
        ids = normalize_user_ids(user_ids)
        run_id = uuid4()
        note = note or self.config.default_settlement_note
        started_at = self.clock()

        metrics.settlement_runs_total.inc()
        log = logger.bind(run_id=str(run_id))
        log.info("settlement_run_started", user_count=len(ids))

        semaphore = asyncio.Semaphore(self.config.settlement_concurrency)

        async def run_unit(user_id: UUID) -> UserSettlementResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return UserSettlementResult(
                        user_id=user_id,
                        status=SettlementStatus.CANCELLED,
                        message="Settlement run was cancelled before this user was processed",
                    )
                return await self._settle_user(user_id, note, run_id)

        with tracer.start_as_current_span("settlement.run") as span:
            span.set_attribute("settlement.run_id", str(run_id))
            span.set_attribute("settlement.user_count", len(ids))
            with metrics.settlement_run_duration_seconds.time():
                outcomes = await asyncio.gather(*(run_unit(user_id) for user_id in ids), return_exceptions=True)

        results = []
        for user_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                log.error("settlement_unit_crashed", user_id=str(user_id), error_type=type(outcome).__name__)
                outcome = UserSettlementResult(
                    user_id=user_id,
                    status=SettlementStatus.FAILED,
                    message="Settlement did not complete",
                    error_code=ErrorCode.INTERNAL_ERROR,
                )
            metrics.settlement_outcomes_total.labels(status=outcome.status.value).inc()
            results.append(outcome)

        report = SettlementReport(
            run_id=run_id,
            note=note,
            currency=self.config.currency,
            total=len(ids),
            succeeded=sum(1 for r in results if r.status == SettlementStatus.SUCCESS),
            failed=sum(1 for r in results if r.status == SettlementStatus.FAILED),
            skipped=sum(1 for r in results if r.status == SettlementStatus.SKIPPED),
            cancelled=sum(1 for r in results if r.status == SettlementStatus.CANCELLED),
            results=results,
            started_at=started_at,
            finished_at=self.clock(),
        )

        log.info(
            "settlement_run_completed",
            total=report.total,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            cancelled=report.cancelled,
        )
        return report

    async def _settle_user(self, user_id: UUID, note: str, run_id: UUID) -> UserSettlementResult:
        log = logger.bind(run_id=str(run_id), user_id=str(user_id))

        with tracer.start_as_current_span("settlement.user") as span:
            span.set_attribute("settlement.user_id", str(user_id))
            try:
                async with self.session_factory() as db:
                    result = await self._settle_in_session(db, user_id, note, log)
            except BillingError as e:
                result = UserSettlementResult(
                    user_id=user_id,
                    status=SettlementStatus.FAILED,
                    message=e.message,
                    error_code=e.code,
                )
            except Exception as e:
                log.exception("settlement_user_error", exc_info=e)
                result = UserSettlementResult(
                    user_id=user_id,
                    status=SettlementStatus.FAILED,
                    message="Unexpected error during settlement",
                    error_code=ErrorCode.INTERNAL_ERROR,
                )
            span.set_attribute("settlement.status", result.status.value)

        log.info(
            "settlement_user_completed",
            status=result.status.value,
            amount=result.amount,
            minutes=result.minutes,
            error_code=result.error_code,
            reconciliation_required=result.reconciliation_required,
        )
        return result

    async def _settle_in_session(
        self, db: AsyncSession, user_id: UUID, note: str, log: structlog.stdlib.BoundLogger
    ) -> UserSettlementResult:
        usage = UsageService(db)
        ledger = LedgerService(db)

        # 1. Default credential
        try:
            credential, charge_credential = await CredentialService(db, self.vault).resolve_charge_credential(user_id)
        except (NoDefaultPaymentMethod, VaultError) as e:
            await db.rollback()
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.FAILED,
                message=e.message,
                error_code=e.code,
            )
        method_kind = credential.method_kind

        # 2. Unpaid usage
        if await usage.unpaid_total_minutes(user_id) == 0:
            await db.rollback()
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.SKIPPED,
                method_kind=method_kind,
                message="No unpaid usage",
            )

        # 3. Claim
        claim_id = uuid4()
        claimed = await usage.claim_unpaid_intervals(user_id, claim_id, self.clock())
        await db.commit()
        if claimed == 0:
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.SKIPPED,
                method_kind=method_kind,
                message="Unpaid usage is already held by another settlement run",
            )

        intervals = await usage.claimed_intervals(claim_id)
        interval_ids = [interval.id for interval in intervals]
        minutes = sum(interval.duration_minutes or 0 for interval in intervals)
        if minutes == 0:
            await self._release(db, claim_id, log)
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.SKIPPED,
                method_kind=method_kind,
                message="No unpaid usage",
            )

        rate = self.config.rate_per_minute
        currency = self.config.currency
        amount = usage_amount(minutes, rate, currency)
        if amount == 0:
            await self._release(db, claim_id, log)
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.SKIPPED,
                minutes=minutes,
                method_kind=method_kind,
                message="Unpaid usage settles for a zero amount",
            )
        log = log.bind(claim_id=str(claim_id))

        # 4. Charge
        charge = await self._charge(charge_credential, amount, currency, note, claim_id, log)

        # 5. Ledger entry
        outcome = LedgerOutcome.SUCCESS if charge.success else LedgerOutcome.FAILED
        outcome_unknown = charge.response_code == ErrorCode.GATEWAY_TIMEOUT
        try:
            entry = await ledger.append(
                user_id=user_id,
                covered_interval_ids=interval_ids,
                minutes=minutes,
                rate_per_minute=rate,
                amount=amount,
                currency=currency,
                method_kind=method_kind,
                outcome=outcome,
                settlement_claim=claim_id,
                credential_id=credential.id,
                external_transaction_ref=charge.external_transaction_ref,
                failure_reason=None if charge.success else charge.message,
                auth_code=charge.auth_code,
                response_code=charge.response_code,
                response_message=charge.message,
                note=note,
            )
            entry_id = entry.id
            await db.commit()
        except (PersistenceError, SQLAlchemyError) as e:
            await db.rollback()
            if charge.success or outcome_unknown:
                # Money may have moved but nothing records it; the claim stays for an operator
                metrics.reconciliation_required_total.inc()
                log.error(
                    "settlement_ledger_write_failed",
                    external_transaction_ref=charge.external_transaction_ref,
                    amount=amount,
                    error_type=type(e).__name__,
                )
            else:
                await self._release(db, claim_id, log)
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.FAILED,
                amount=amount,
                minutes=minutes,
                covered_interval_count=len(interval_ids),
                method_kind=method_kind,
                external_transaction_ref=charge.external_transaction_ref,
                message="Failed to record settlement outcome",
                error_code=ErrorCode.PERSISTENCE_ERROR,
                reconciliation_required=charge.success or outcome_unknown,
            )

        metrics.settlement_amount_cents_total.labels(outcome=outcome.value).inc(amount)

        if outcome_unknown:
            # The charge may still land at the processor; the claim stays
            metrics.reconciliation_required_total.inc()
            log.error("settlement_charge_outcome_unknown", entry_id=str(entry_id), amount=amount)
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.FAILED,
                amount=amount,
                minutes=minutes,
                covered_interval_count=len(interval_ids),
                method_kind=method_kind,
                ledger_entry_id=entry_id,
                message=f"{charge.message}; usage held for reconciliation",
                error_code=ErrorCode.GATEWAY_TIMEOUT,
                reconciliation_required=True,
            )

        if not charge.success:
            await self._release(db, claim_id, log)
            return UserSettlementResult(
                user_id=user_id,
                status=SettlementStatus.FAILED,
                amount=amount,
                minutes=minutes,
                covered_interval_count=len(interval_ids),
                method_kind=method_kind,
                ledger_entry_id=entry_id,
                external_transaction_ref=charge.external_transaction_ref,
                message=charge.message,
                error_code=ErrorCode.GATEWAY_ERROR,
            )

        # 6. Mark paid
        reconciliation_required = False
        message = f"Charged {format_amount_for_currency(amount, currency)} for {minutes} minutes"
        try:
            updated = await usage.mark_claim_paid(claim_id, entry_id, interval_ids)
            if updated != len(interval_ids):
                raise PersistenceError(
                    f"Marked {updated} of {len(interval_ids)} covered intervals paid",
                    context={"claim_id": str(claim_id), "entry_id": str(entry_id)},
                )
            await db.commit()
        except (PersistenceError, SQLAlchemyError) as e:
            await db.rollback()
            reconciliation_required = True
            message = "Charge succeeded but usage could not be marked paid; reconciliation required"
            metrics.reconciliation_required_total.inc()
            log.error(
                "settlement_mark_paid_failed",
                entry_id=str(entry_id),
                interval_count=len(interval_ids),
                error_type=type(e).__name__,
            )

        return UserSettlementResult(
            user_id=user_id,
            status=SettlementStatus.SUCCESS,
            amount=amount,
            minutes=minutes,
            covered_interval_count=len(interval_ids),
            method_kind=method_kind,
            ledger_entry_id=entry_id,
            external_transaction_ref=charge.external_transaction_ref,
            message=message,
            reconciliation_required=reconciliation_required,
        )

    async def _charge(
        self,
        credential: ChargeCredential,
        amount: int,
        currency: str,
        note: str,
        claim_id: UUID,
        log: structlog.stdlib.BoundLogger,
    ) -> ChargeResult:
        timeout = self.config.gateway_timeout_seconds
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.gateway.charge(
                    credential,
                    amount,
                    currency,
                    description=note,
                    idempotency_key=str(claim_id),
                ),
                timeout=timeout,
            )
            label = "success" if result.success else "declined"
        except asyncio.TimeoutError:
            result = ChargeResult.declined(
                f"Payment gateway timed out after {timeout:g}s",
                response_code=ErrorCode.GATEWAY_TIMEOUT,
            )
            label = "timeout"
        except GatewayError as e:
            result = ChargeResult.declined(e.reason)
            label = "error"
        except Exception as e:
            log.exception("gateway_charge_error", exc_info=e)
            result = ChargeResult.declined("Payment gateway call failed")
            label = "error"

        metrics.gateway_charge_duration_seconds.labels(outcome=label).observe(time.perf_counter() - started)
        if not result.success:
            log.warning("gateway_charge_failed", outcome=label, amount=amount, message=result.message)
        return result

    async def _release(self, db: AsyncSession, claim_id: UUID, log: structlog.stdlib.BoundLogger) -> None:
        try:
            await UsageService(db).release_claim(claim_id)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            log.error("settlement_claim_release_failed", error_type=type(e).__name__)
