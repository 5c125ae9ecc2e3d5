import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.currency import from_minor_units, to_minor_units
from app.db import Base, DiscountCodeRow, MerchantPolicyRow, PayoutRow, PromoterRow, make_engine
from app.errors import (DuplicateEvent, InvalidTransition, LedgerWriteConflict, PayoutNotFound,
                        PromoterNotFound)
from app.models import (
    CalculationBase,
    CommissionResult,
    DiscountCode,
    FailureReason,
    MerchantPayoutPolicy,
    MonthlyPayoutTrend,
    PayoutAnalytics,
    PayoutRecord,
    PayoutStatus,
    PayoutSummary,
    PromoterAccount,
    PromoterPayoutStats,
    RatePayoutTotals,
    StatusTotals,
    utcnow,
)
from app.state_machine import assert_completed_invariant, assert_transition

logger = logging.getLogger(__name__)

# fields a transition may set besides status
_TRANSITION_FIELDS = ("transfer_id", "failure_reason", "failure_message", "processed_at")

TOP_PROMOTERS = 10
RECENT_PAYOUTS = 50


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _promoter(row: PromoterRow) -> PromoterAccount:
    return PromoterAccount(
        id=row.id,
        merchant_id=row.merchant_id,
        name=row.name,
        commission_rate=row.commission_rate,
        transfer_destination_id=row.transfer_destination_id,
        is_active=row.is_active,
    )


def _discount_code(row: DiscountCodeRow) -> DiscountCode:
    return DiscountCode(
        id=row.id,
        merchant_id=row.merchant_id,
        code=row.code,
        promoter_id=row.promoter_id,
        is_active=row.is_active,
        usage_limit=row.usage_limit,
        usage_count=row.usage_count,
        expires_at=_utc(row.expires_at),
    )


def _payout(row: PayoutRow) -> PayoutRecord:
    return PayoutRecord(
        id=row.id,
        merchant_id=row.merchant_id,
        promoter_id=row.promoter_id,
        order_id=row.order_id,
        discount_code=row.discount_code,
        original_amount=from_minor_units(row.original_cents),
        discounted_amount=from_minor_units(row.discounted_cents),
        commission_rate=row.commission_rate,
        commission_amount=from_minor_units(row.commission_cents),
        calculation_base=CalculationBase(row.calculation_base),
        status=PayoutStatus(row.status),
        transfer_id=row.transfer_id,
        failure_reason=FailureReason(row.failure_reason) if row.failure_reason else None,
        failure_message=row.failure_message,
        attempt_count=row.attempt_count,
        version=row.version,
        created_at=_utc(row.created_at),
        claimed_at=_utc(row.claimed_at),
        processed_at=_utc(row.processed_at),
    )


class DataStore:
    """Durable payout ledger plus the promoter / code / policy directory it reads."""

    def __init__(self, engine: Engine, max_transition_attempts: int = 3) -> None:
        self.engine = engine
        self.max_transition_attempts = max_transition_attempts
        Base.metadata.create_all(engine)
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, max_transition_attempts: int = 3) -> "DataStore":
        return cls(make_engine(database_url), max_transition_attempts)

    # ── directory writes ─────────────────────────────────────────────────────

    def add_promoter(self, promoter: PromoterAccount) -> None:
        with self._sessions() as session:
            session.merge(PromoterRow(
                id=promoter.id,
                merchant_id=promoter.merchant_id,
                name=promoter.name,
                commission_rate=promoter.commission_rate,
                transfer_destination_id=promoter.transfer_destination_id,
                is_active=promoter.is_active,
            ))
            session.commit()

    def add_discount_code(self, code: DiscountCode) -> None:
        """Upsert a code; codes are unique per merchant, so an existing (merchant, code) keeps its id."""
        stmt = select(DiscountCodeRow.id).where(
            DiscountCodeRow.merchant_id == code.merchant_id,
            DiscountCodeRow.code == code.code,
        )
        with self._sessions() as session:
            existing_id = session.scalars(stmt).first()
            session.merge(DiscountCodeRow(
                id=existing_id or code.id,
                merchant_id=code.merchant_id,
                code=code.code,
                promoter_id=code.promoter_id,
                is_active=code.is_active,
                usage_limit=code.usage_limit,
                usage_count=code.usage_count,
                expires_at=code.expires_at,
            ))
            session.commit()

    def set_policy(self, policy: MerchantPayoutPolicy) -> None:
        with self._sessions() as session:
            session.merge(MerchantPolicyRow(
                merchant_id=policy.merchant_id,
                auto_payout=policy.auto_payout,
                minimum_payout_cents=to_minor_units(policy.minimum_payout_amount),
                calculation_base=policy.calculation_base.value,
            ))
            session.commit()

    def attach_destination(self, promoter_id: str, destination_id: str) -> PromoterAccount:
        with self._sessions() as session:
            row = session.get(PromoterRow, promoter_id)
            if row is None:
                raise PromoterNotFound(promoter_id)
            row.transfer_destination_id = destination_id
            session.commit()
            return _promoter(row)

    def deactivate_promoter(self, promoter_id: str) -> PromoterAccount:
        with self._sessions() as session:
            row = session.get(PromoterRow, promoter_id)
            if row is None:
                raise PromoterNotFound(promoter_id)
            row.is_active = False
            session.commit()
            return _promoter(row)

    # ── directory reads ──────────────────────────────────────────────────────

    def get_policy(self, merchant_id: str) -> MerchantPayoutPolicy:
        """Merchant payout policy; merchants without settings never auto-pay."""
        with self._sessions() as session:
            row = session.get(MerchantPolicyRow, merchant_id)
            if row is None:
                return MerchantPayoutPolicy(merchant_id=merchant_id)
            return MerchantPayoutPolicy(
                merchant_id=row.merchant_id,
                auto_payout=row.auto_payout,
                minimum_payout_amount=from_minor_units(row.minimum_payout_cents),
                calculation_base=CalculationBase(row.calculation_base),
            )

    def find_by_code(self, merchant_id: str, code: str) -> Optional[tuple[PromoterAccount, DiscountCode]]:
        """Exact, merchant-scoped code lookup joined to its owning promoter."""
        stmt = (
            select(PromoterRow, DiscountCodeRow)
            .join(DiscountCodeRow, DiscountCodeRow.promoter_id == PromoterRow.id)
            .where(DiscountCodeRow.merchant_id == merchant_id, DiscountCodeRow.code == code)
        )
        with self._sessions() as session:
            found = session.execute(stmt).first()
            if found is None:
                return None
            promoter_row, code_row = found
            return _promoter(promoter_row), _discount_code(code_row)

    def get_promoter(self, promoter_id: str) -> Optional[PromoterAccount]:
        with self._sessions() as session:
            row = session.get(PromoterRow, promoter_id)
            return _promoter(row) if row else None

    def list_promoters(self, merchant_id: Optional[str] = None) -> list[PromoterAccount]:
        stmt = select(PromoterRow).order_by(PromoterRow.id)
        if merchant_id is not None:
            stmt = stmt.where(PromoterRow.merchant_id == merchant_id)
        with self._sessions() as session:
            return [_promoter(r) for r in session.scalars(stmt)]

    # ── ledger writes ────────────────────────────────────────────────────────

    def create_pending(
        self,
        *,
        merchant_id: str,
        promoter_id: str,
        order_id: str,
        discount_code: str,
        commission: CommissionResult,
    ) -> PayoutRecord:
        """Insert a PENDING payout.

        The (merchant, order, code) unique constraint is the idempotency
        boundary: a concurrent or repeated insert raises DuplicateEvent
        carrying the id of the record that won.
        """
        row = PayoutRow(
            id=f"po_{uuid.uuid4().hex[:12]}",
            merchant_id=merchant_id,
            promoter_id=promoter_id,
            order_id=order_id,
            discount_code=discount_code,
            original_cents=to_minor_units(commission.original_amount),
            discounted_cents=to_minor_units(commission.discounted_amount),
            commission_rate=commission.commission_rate,
            commission_cents=to_minor_units(commission.commission_amount),
            calculation_base=commission.calculation_base.value,
            status=PayoutStatus.PENDING.value,
            attempt_count=0,
            version=1,
            created_at=utcnow(),
        )
        with self._sessions() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_payout(merchant_id, order_id, discount_code)
                if existing is None:
                    raise
                raise DuplicateEvent(existing.id) from None
            return _payout(row)

    def transition(
        self,
        payout_id: str,
        new_status: PayoutStatus,
        *,
        allowed_from: Optional[Iterable[PayoutStatus]] = None,
        **changes,
    ) -> PayoutRecord:
        """Move a payout to `new_status` with a version-checked UPDATE.

        A lost race re-reads the row and tries again, up to
        `max_transition_attempts`; the re-read may turn the race into an
        InvalidTransition (someone else already moved the record).
        """
        unknown = set(changes) - set(_TRANSITION_FIELDS)
        if unknown:
            raise TypeError(f"transition() got unexpected fields: {sorted(unknown)}")
        new_status = PayoutStatus(new_status)
        allowed = frozenset(PayoutStatus(s) for s in allowed_from) if allowed_from is not None else None

        for attempt in range(1, self.max_transition_attempts + 1):
            with self._sessions() as session:
                row = session.get(PayoutRow, payout_id)
                if row is None:
                    raise PayoutNotFound(payout_id)
                current = PayoutStatus(row.status)
                if allowed is not None and current not in allowed:
                    raise InvalidTransition(current.value, new_status.value, payout_id)
                assert_transition(current, new_status, payout_id)
                assert_completed_invariant(new_status, changes.get("transfer_id"), row.commission_cents)

                values = {"status": new_status.value, "version": row.version + 1}
                if new_status == PayoutStatus.PROCESSING:
                    values.update(
                        attempt_count=row.attempt_count + 1,
                        failure_reason=None,
                        failure_message=None,
                        processed_at=None,
                        claimed_at=utcnow(),
                    )
                for key, value in changes.items():
                    values[key] = value.value if isinstance(value, FailureReason) else value

                result = session.execute(
                    update(PayoutRow)
                    .where(PayoutRow.id == payout_id, PayoutRow.version == row.version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    break
                session.rollback()
            logger.warning(
                "ledger_write_conflict",
                extra={"payout_id": payout_id, "status": new_status.value, "reason": f"attempt {attempt}"},
            )
        else:
            raise LedgerWriteConflict(
                f"Payout '{payout_id}' changed concurrently {self.max_transition_attempts} times; "
                f"could not move it to {new_status.value}"
            )

        record = self.get_payout(payout_id)
        if record is None:
            raise PayoutNotFound(payout_id)
        return record

    # ── ledger reads ─────────────────────────────────────────────────────────

    def get_payout(self, payout_id: str) -> Optional[PayoutRecord]:
        with self._sessions() as session:
            row = session.get(PayoutRow, payout_id)
            return _payout(row) if row else None

    def find_payout(self, merchant_id: str, order_id: str, discount_code: str) -> Optional[PayoutRecord]:
        stmt = select(PayoutRow).where(
            PayoutRow.merchant_id == merchant_id,
            PayoutRow.order_id == order_id,
            PayoutRow.discount_code == discount_code,
        )
        with self._sessions() as session:
            row = session.scalars(stmt).first()
            return _payout(row) if row else None

    def list_payouts(
        self,
        merchant_id: str,
        status: Optional[PayoutStatus] = None,
        promoter_id: Optional[str] = None,
    ) -> list[PayoutRecord]:
        stmt = select(PayoutRow).where(PayoutRow.merchant_id == merchant_id)
        if status is not None:
            stmt = stmt.where(PayoutRow.status == PayoutStatus(status).value)
        if promoter_id is not None:
            stmt = stmt.where(PayoutRow.promoter_id == promoter_id)
        stmt = stmt.order_by(PayoutRow.created_at, PayoutRow.id)
        with self._sessions() as session:
            return [_payout(r) for r in session.scalars(stmt)]

    def pending_for_promoter(self, merchant_id: str, promoter_id: str) -> list[PayoutRecord]:
        return self.list_payouts(merchant_id, status=PayoutStatus.PENDING, promoter_id=promoter_id)

    def pending_promoter_ids(self, merchant_id: str) -> list[str]:
        stmt = (
            select(PayoutRow.promoter_id)
            .where(PayoutRow.merchant_id == merchant_id, PayoutRow.status == PayoutStatus.PENDING.value)
            .distinct()
            .order_by(PayoutRow.promoter_id)
        )
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def summary(self, merchant_id: str) -> PayoutSummary:
        stmt = (
            select(PayoutRow.status, func.count(PayoutRow.id), func.coalesce(func.sum(PayoutRow.commission_cents), 0))
            .where(PayoutRow.merchant_id == merchant_id)
            .group_by(PayoutRow.status)
        )
        totals = {s: StatusTotals() for s in PayoutStatus}
        with self._sessions() as session:
            for status, count, cents in session.execute(stmt):
                totals[PayoutStatus(status)] = StatusTotals(count=count, amount=from_minor_units(int(cents)))

        return PayoutSummary(
            merchant_id=merchant_id,
            total_payouts=sum(t.count for t in totals.values()),
            total_amount=sum((t.amount for t in totals.values()), Decimal("0.00")),
            pending=totals[PayoutStatus.PENDING],
            processing=totals[PayoutStatus.PROCESSING],
            completed=totals[PayoutStatus.COMPLETED],
            failed=totals[PayoutStatus.FAILED],
        )

    def analytics(
        self,
        merchant_id: str,
        period_days: int = 30,
        promoter_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PayoutAnalytics:
        """Payout statistics for records created in the last `period_days` days.

        Breaks the window down by status, promoter (top ten by amount), calendar
        month and the commission rate snapshotted on each record.
        """
        if period_days < 1:
            raise ValueError(f"period_days must be at least 1, got {period_days}")
        since = (now or utcnow()) - timedelta(days=period_days)

        stmt = select(PayoutRow).where(PayoutRow.merchant_id == merchant_id, PayoutRow.created_at >= since)
        if promoter_id is not None:
            stmt = stmt.where(PayoutRow.promoter_id == promoter_id)
        stmt = stmt.order_by(PayoutRow.created_at.desc(), PayoutRow.id)
        with self._sessions() as session:
            records = [_payout(r) for r in session.scalars(stmt)]
        names = {p.id: p.name for p in self.list_promoters(merchant_id)}

        by_status = {s: StatusTotals() for s in PayoutStatus}
        promoters: dict[str, PromoterPayoutStats] = {}
        months: dict[str, MonthlyPayoutTrend] = {}
        rates: dict[Decimal, RatePayoutTotals] = {}

        for r in records:
            amount = r.commission_amount
            totals = by_status[r.status]
            totals.count += 1
            totals.amount += amount

            stats = promoters.setdefault(
                r.promoter_id, PromoterPayoutStats(promoter_id=r.promoter_id, name=names.get(r.promoter_id))
            )
            stats.payout_count += 1
            stats.total_amount += amount
            if r.status == PayoutStatus.COMPLETED:
                stats.completed_amount += amount
            elif r.status == PayoutStatus.PENDING:
                stats.pending_amount += amount

            month = months.setdefault(
                r.created_at.strftime("%Y-%m"), MonthlyPayoutTrend(month=r.created_at.strftime("%Y-%m"))
            )
            month.payout_count += 1
            month.total_amount += amount
            if r.status == PayoutStatus.COMPLETED:
                month.completed_amount += amount

            rate = rates.setdefault(r.commission_rate, RatePayoutTotals(commission_rate=r.commission_rate))
            rate.payout_count += 1
            rate.total_amount += amount

        top = sorted(promoters.values(), key=lambda s: (-s.total_amount, s.promoter_id))[:TOP_PROMOTERS]
        return PayoutAnalytics(
            merchant_id=merchant_id,
            period_days=period_days,
            promoter_id=promoter_id,
            since=since,
            total_payouts=len(records),
            total_amount=sum((r.commission_amount for r in records), Decimal("0.00")),
            status_breakdown={s.value: t for s, t in by_status.items()},
            top_promoters=top,
            monthly_trends=[months[m] for m in sorted(months)],
            by_commission_rate=[rates[k] for k in sorted(rates)],
            recent_payouts=records[:RECENT_PAYOUTS],
        )
