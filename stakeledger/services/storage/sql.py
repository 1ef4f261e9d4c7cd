"""
Relational Storage Implementation (SQLAlchemy, async)

DESIGN DECISION: The production system of record is a relational database
accessed through SQLAlchemy's asyncio extension. Any async dialect works;
tests use SQLite through aiosqlite.

How the invariants map onto SQL:
- Optimistic concurrency: UPDATE accounts ... WHERE id = :id AND version = :expected.
  Zero rows updated means another settlement committed first.
- Atomic settlement: the account UPDATE and the ledger INSERT run in one
  transaction; any failure rolls both back.
- Exactly-once: ledger_entries.idempotency_key has a UNIQUE constraint.
- Money: stored as integer minor units (BigInteger), never REAL/FLOAT.
- Creation order: ledger_entries.sequence is an autoincrement primary key.

Backend failures are translated to StoreUnavailable. Reads are retried
a few times first; writes are not, because their outcome is unknown and
the caller must retry with the same idempotency key instead.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from stakeledger.errors import StoreUnavailable
from stakeledger.models.goal import (
    AlarmClock,
    AlarmLog,
    Goal,
    GoalCollaboration,
    GoalStatus,
    GoalType,
    Task,
    Verification,
)
from stakeledger.models.ledger import (
    Account,
    EntityType,
    LedgerEntry,
    LedgerEntryDraft,
    RelatedEntity,
    TransactionKind,
    ensure_aware,
    from_minor_units,
    to_minor_units,
)
from stakeledger.services.storage.interface import (
    DuplicateError,
    GoalStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    VersionConflict,
)


Base = declarative_base()


# =============================================================================
# TABLES
# =============================================================================

class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True)
    balance_minor = Column(BigInteger, nullable=False, default=0)
    total_earned_minor = Column(BigInteger, nullable=False, default=0)
    total_lost_minor = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entries"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), nullable=False, unique=True)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)  # +credit / -debit
    kind = Column(String(16), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(36), nullable=False, index=True)
    idempotency_key = Column(String(200), nullable=True, unique=True)
    description = Column(String(500), nullable=True)
    balance_before_minor = Column(BigInteger, nullable=False)
    balance_after_minor = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class GoalRow(Base):
    __tablename__ = "goals"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    goal_type = Column(String(32), nullable=False)
    target_value = Column(String(200), nullable=False)
    current_value = Column(String(200), nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=False)
    stake_minor = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    requires_verification = Column(Boolean, nullable=False, default=True)
    verification_count = Column(Integer, nullable=False, default=0)
    resolution_key = Column(String(200), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class CollaborationRow(Base):
    __tablename__ = "goal_collaborations"
    __table_args__ = (
        UniqueConstraint("goal_id", "collaborator_id", name="uq_collaboration_goal_collaborator"),
    )

    id = Column(String(36), primary_key=True)
    goal_id = Column(String(36), ForeignKey("goals.id"), nullable=False, index=True)
    collaborator_id = Column(String(36), nullable=False)
    stake_minor = Column(BigInteger, nullable=False)
    will_earn_if_fails = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class VerificationRow(Base):
    __tablename__ = "verifications"

    id = Column(String(36), primary_key=True)
    goal_id = Column(String(36), ForeignKey("goals.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    verification_type = Column(String(16), nullable=False)
    evidence = Column(JSON, nullable=False)
    verified_value = Column(String(200), nullable=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    reviewed_by = Column(String(36), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AlarmRow(Base):
    __tablename__ = "alarm_clocks"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    goal_id = Column(String(36), nullable=True)
    title = Column(String(200), nullable=False)
    alarm_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False)
    code = Column(String(12), nullable=False)
    stake_minor = Column(BigInteger, nullable=False)
    window_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_triggered = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class AlarmLogRow(Base):
    __tablename__ = "alarm_logs"

    id = Column(String(36), primary_key=True)
    alarm_id = Column(String(36), ForeignKey("alarm_clocks.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    window_date = Column(Date, nullable=False)
    entered_at = Column(DateTime(timezone=True), nullable=True)
    code_entered = Column(String(12), nullable=True)
    was_successful = Column(Boolean, nullable=False, default=False)
    penalty_minor = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)


class TaskRow(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    goal_id = Column(String(36), nullable=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    reward_minor = Column(BigInteger, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# CONVERSION HELPERS
# =============================================================================

def _dt_in(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to UTC before writing (SQLite drops the offset)."""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc)


def _dt_out(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_aware(value) if value is not None else None


def _uuid_or_none(value: Optional[str]) -> Optional[UUID]:
    return UUID(value) if value else None


def _str_or_none(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value else None


_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(StoreUnavailable),
    reraise=True,
)


# =============================================================================
# DATABASE HANDLE
# =============================================================================

class SqlDatabase:
    """
    Owns the async engine and session factory.

    Usage:
        db = SqlDatabase("sqlite+aiosqlite:///./stakeledger.db")
        await db.create_all()
        ledger = SqlLedgerStorage(db)
    """

    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {"timeout": 30} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url,
            echo=echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """Create tables if they don't exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Failed to create schema: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        One session, one transaction.

        Commits on success, rolls back on any exception. Storage outcomes
        the engine handles (conflicts, duplicates, missing rows) pass
        through; everything else becomes StoreUnavailable.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except (VersionConflict, DuplicateError, NotFoundError):
            raise
        except IntegrityError as e:
            raise DuplicateError(f"{operation}: unique constraint violated") from e
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"{operation} failed: {e}") from e


# =============================================================================
# LEDGER STORAGE
# =============================================================================

class SqlLedgerStorage(LedgerStorageInterface):
    """Accounts and ledger entries in a relational database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    def _row_to_account(self, row: AccountRow) -> Account:
        return Account(
            id=UUID(row.id),
            balance=from_minor_units(row.balance_minor),
            total_earned=from_minor_units(row.total_earned_minor),
            total_lost=from_minor_units(row.total_lost_minor),
            version=row.version,
            created_at=_dt_out(row.created_at),
            updated_at=_dt_out(row.updated_at),
        )

    def _draft_to_row(self, draft: LedgerEntryDraft) -> LedgerEntryRow:
        return LedgerEntryRow(
            entry_id=str(uuid4()),
            account_id=str(draft.account_id),
            amount_minor=to_minor_units(draft.amount),
            kind=draft.kind.value,
            entity_type=draft.related_entity.entity_type.value,
            entity_id=str(draft.related_entity.entity_id),
            idempotency_key=draft.idempotency_key,
            description=draft.description,
            balance_before_minor=to_minor_units(draft.balance_before),
            balance_after_minor=to_minor_units(draft.balance_after),
            created_at=_dt_in(draft.created_at),
        )

    def _row_to_entry(self, row: LedgerEntryRow) -> LedgerEntry:
        return LedgerEntry(
            id=UUID(row.entry_id),
            sequence=row.sequence,
            account_id=UUID(row.account_id),
            amount=from_minor_units(row.amount_minor),
            kind=TransactionKind(row.kind),
            related_entity=RelatedEntity(
                entity_type=EntityType(row.entity_type),
                entity_id=UUID(row.entity_id),
            ),
            idempotency_key=row.idempotency_key,
            description=row.description,
            balance_before=from_minor_units(row.balance_before_minor),
            balance_after=from_minor_units(row.balance_after_minor),
            created_at=_dt_out(row.created_at),
        )

    async def create_account(self, account: Account) -> Account:
        async with self._db.transaction("create_account") as session:
            existing = await session.get(AccountRow, str(account.id))
            if existing is not None:
                raise DuplicateError(f"Account already exists: {account.id}")
            session.add(AccountRow(
                id=str(account.id),
                balance_minor=to_minor_units(account.balance),
                total_earned_minor=to_minor_units(account.total_earned),
                total_lost_minor=to_minor_units(account.total_lost),
                version=account.version,
                created_at=_dt_in(account.created_at),
                updated_at=_dt_in(account.updated_at),
            ))
        return account

    @_read_retry
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        async with self._db.transaction("get_account") as session:
            row = await session.get(AccountRow, str(account_id))
            return self._row_to_account(row) if row else None

    async def commit_settlement(
        self,
        account: Account,
        expected_version: int,
        draft: LedgerEntryDraft,
    ) -> LedgerEntry:
        async with self._db.transaction("commit_settlement") as session:
            result = await session.execute(
                update(AccountRow)
                .where(
                    AccountRow.id == str(account.id),
                    AccountRow.version == expected_version,
                )
                .values(
                    balance_minor=to_minor_units(account.balance),
                    total_earned_minor=to_minor_units(account.total_earned),
                    total_lost_minor=to_minor_units(account.total_lost),
                    version=account.version,
                    updated_at=_dt_in(account.updated_at),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.get(AccountRow, str(account.id))
                if current is None:
                    raise NotFoundError(f"Account not found: {account.id}")
                raise VersionConflict(account.id, expected_version, current.version)

            row = self._draft_to_row(draft)
            session.add(row)
            await session.flush()
            entry = self._row_to_entry(row)
        return entry

    async def append_entry(self, draft: LedgerEntryDraft) -> LedgerEntry:
        async with self._db.transaction("append_entry") as session:
            row = self._draft_to_row(draft)
            session.add(row)
            await session.flush()
            entry = self._row_to_entry(row)
        return entry

    @_read_retry
    async def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        async with self._db.transaction("get_entry_by_key") as session:
            result = await session.execute(
                select(LedgerEntryRow).where(LedgerEntryRow.idempotency_key == idempotency_key)
            )
            row = result.scalar_one_or_none()
            return self._row_to_entry(row) if row else None

    @_read_retry
    async def list_entries(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[LedgerEntry]:
        order = LedgerEntryRow.sequence.desc() if newest_first else LedgerEntryRow.sequence.asc()
        stmt = (
            select(LedgerEntryRow)
            .where(LedgerEntryRow.account_id == str(account_id))
            .order_by(order)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._db.transaction("list_entries") as session:
            result = await session.execute(stmt)
            return [self._row_to_entry(row) for row in result.scalars().all()]


# =============================================================================
# GOAL STORAGE
# =============================================================================

class SqlGoalStorage(GoalStorageInterface):
    """Goals, collaborations, verifications, alarms and tasks in a relational database."""

    def __init__(self, db: SqlDatabase):
        self._db = db

    # Goals ------------------------------------------------------------------

    def _goal_values(self, goal: Goal) -> dict:
        return {
            "id": str(goal.id),
            "owner_id": str(goal.owner_id),
            "title": goal.title,
            "description": goal.description,
            "goal_type": goal.goal_type.value,
            "target_value": goal.target_value,
            "current_value": goal.current_value,
            "deadline": _dt_in(goal.deadline),
            "stake_minor": to_minor_units(goal.stake_amount),
            "status": goal.status.value,
            "requires_verification": goal.requires_verification,
            "verification_count": goal.verification_count,
            "resolution_key": goal.resolution_key,
            "resolved_at": _dt_in(goal.resolved_at),
            "created_at": _dt_in(goal.created_at),
            "updated_at": _dt_in(goal.updated_at),
        }

    def _row_to_goal(self, row: GoalRow) -> Goal:
        return Goal(
            id=UUID(row.id),
            owner_id=UUID(row.owner_id),
            title=row.title,
            description=row.description,
            goal_type=GoalType(row.goal_type),
            target_value=row.target_value,
            current_value=row.current_value,
            deadline=_dt_out(row.deadline),
            stake_amount=from_minor_units(row.stake_minor),
            status=GoalStatus(row.status),
            requires_verification=row.requires_verification,
            verification_count=row.verification_count,
            resolution_key=row.resolution_key,
            resolved_at=_dt_out(row.resolved_at),
            created_at=_dt_out(row.created_at),
            updated_at=_dt_out(row.updated_at),
        )

    async def save_goal(self, goal: Goal) -> Goal:
        async with self._db.transaction("save_goal") as session:
            session.add(GoalRow(**self._goal_values(goal)))
        return goal

    @_read_retry
    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        async with self._db.transaction("get_goal") as session:
            row = await session.get(GoalRow, str(goal_id))
            return self._row_to_goal(row) if row else None

    @_read_retry
    async def list_goals(
        self,
        owner_id: Optional[UUID] = None,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        stmt = select(GoalRow).order_by(GoalRow.created_at.desc())
        if owner_id:
            stmt = stmt.where(GoalRow.owner_id == str(owner_id))
        if status:
            stmt = stmt.where(GoalRow.status == status.value)

        async with self._db.transaction("list_goals") as session:
            result = await session.execute(stmt)
            return [self._row_to_goal(row) for row in result.scalars().all()]

    async def transition_goal(
        self,
        goal: Goal,
        expected_status: GoalStatus,
        expected_verification_count: Optional[int] = None,
    ) -> Goal:
        values = self._goal_values(goal)
        for column in ("id", "created_at", "verification_count"):
            values.pop(column)

        conditions = [GoalRow.id == str(goal.id), GoalRow.status == expected_status.value]
        if expected_verification_count is not None:
            conditions.append(GoalRow.verification_count == expected_verification_count)

        async with self._db.transaction("transition_goal") as session:
            result = await session.execute(
                update(GoalRow)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.get(GoalRow, str(goal.id))
                if current is None:
                    raise NotFoundError(f"Goal not found: {goal.id}")
                if current.status != expected_status.value:
                    raise VersionConflict(goal.id, expected_status.value, current.status)
                raise VersionConflict(goal.id, expected_verification_count, current.verification_count)
            stored = await session.get(GoalRow, str(goal.id))
            return self._row_to_goal(stored)

    # Collaborations ---------------------------------------------------------

    def _row_to_collaboration(self, row: CollaborationRow) -> GoalCollaboration:
        return GoalCollaboration(
            id=UUID(row.id),
            goal_id=UUID(row.goal_id),
            collaborator_id=UUID(row.collaborator_id),
            stake_amount=from_minor_units(row.stake_minor),
            will_earn_if_fails=row.will_earn_if_fails,
            created_at=_dt_out(row.created_at),
        )

    async def add_collaboration(self, collaboration: GoalCollaboration) -> GoalCollaboration:
        async with self._db.transaction("add_collaboration") as session:
            session.add(CollaborationRow(
                id=str(collaboration.id),
                goal_id=str(collaboration.goal_id),
                collaborator_id=str(collaboration.collaborator_id),
                stake_minor=to_minor_units(collaboration.stake_amount),
                will_earn_if_fails=collaboration.will_earn_if_fails,
                created_at=_dt_in(collaboration.created_at),
            ))
        return collaboration

    @_read_retry
    async def list_collaborations(self, goal_id: UUID) -> list[GoalCollaboration]:
        async with self._db.transaction("list_collaborations") as session:
            result = await session.execute(
                select(CollaborationRow)
                .where(CollaborationRow.goal_id == str(goal_id))
                .order_by(CollaborationRow.created_at.asc())
            )
            return [self._row_to_collaboration(row) for row in result.scalars().all()]

    # Verifications ----------------------------------------------------------

    def _row_to_verification(self, row: VerificationRow) -> Verification:
        return Verification(
            id=UUID(row.id),
            goal_id=UUID(row.goal_id),
            user_id=UUID(row.user_id),
            evidence=row.evidence,
            verified_value=row.verified_value,
            is_approved=row.is_approved,
            reviewed_by=_uuid_or_none(row.reviewed_by),
            reviewed_at=_dt_out(row.reviewed_at),
            created_at=_dt_out(row.created_at),
        )

    async def add_verification(self, verification: Verification) -> Verification:
        async with self._db.transaction("add_verification") as session:
            # Takes the goal row lock; a concurrent terminal write either
            # waits for this bump or makes the WHERE miss
            result = await session.execute(
                update(GoalRow)
                .where(
                    GoalRow.id == str(verification.goal_id),
                    GoalRow.status == GoalStatus.ACTIVE.value,
                )
                .values(verification_count=GoalRow.verification_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.get(GoalRow, str(verification.goal_id))
                if current is None:
                    raise NotFoundError(f"Goal not found: {verification.goal_id}")
                raise VersionConflict(verification.goal_id, GoalStatus.ACTIVE.value, current.status)
            session.add(VerificationRow(
                id=str(verification.id),
                goal_id=str(verification.goal_id),
                user_id=str(verification.user_id),
                verification_type=verification.verification_type.value,
                evidence=verification.evidence.model_dump(mode="json"),
                verified_value=verification.verified_value,
                is_approved=verification.is_approved,
                reviewed_by=_str_or_none(verification.reviewed_by),
                reviewed_at=_dt_in(verification.reviewed_at),
                created_at=_dt_in(verification.created_at),
            ))
        return verification

    @_read_retry
    async def get_verification(self, verification_id: UUID) -> Optional[Verification]:
        async with self._db.transaction("get_verification") as session:
            row = await session.get(VerificationRow, str(verification_id))
            return self._row_to_verification(row) if row else None

    async def update_verification(self, verification: Verification) -> Verification:
        async with self._db.transaction("update_verification") as session:
            row = await session.get(VerificationRow, str(verification.id))
            if row is None:
                raise NotFoundError(f"Verification not found: {verification.id}")
            row.verified_value = verification.verified_value
            row.is_approved = verification.is_approved
            row.reviewed_by = _str_or_none(verification.reviewed_by)
            row.reviewed_at = _dt_in(verification.reviewed_at)
        return verification

    @_read_retry
    async def list_verifications(self, goal_id: UUID) -> list[Verification]:
        async with self._db.transaction("list_verifications") as session:
            result = await session.execute(
                select(VerificationRow)
                .where(VerificationRow.goal_id == str(goal_id))
                .order_by(VerificationRow.created_at.asc())
            )
            return [self._row_to_verification(row) for row in result.scalars().all()]

    # Alarms -----------------------------------------------------------------

    def _row_to_alarm(self, row: AlarmRow) -> AlarmClock:
        return AlarmClock(
            id=UUID(row.id),
            user_id=UUID(row.user_id),
            goal_id=_uuid_or_none(row.goal_id),
            title=row.title,
            alarm_time=row.alarm_time,
            timezone=row.timezone,
            code=row.code,
            stake_amount=from_minor_units(row.stake_minor),
            window_minutes=row.window_minutes,
            is_active=row.is_active,
            last_triggered=_dt_out(row.last_triggered),
            created_at=_dt_out(row.created_at),
            updated_at=_dt_out(row.updated_at),
        )

    async def save_alarm(self, alarm: AlarmClock) -> AlarmClock:
        async with self._db.transaction("save_alarm") as session:
            await session.merge(AlarmRow(
                id=str(alarm.id),
                user_id=str(alarm.user_id),
                goal_id=_str_or_none(alarm.goal_id),
                title=alarm.title,
                alarm_time=alarm.alarm_time,
                timezone=alarm.timezone,
                code=alarm.code,
                stake_minor=to_minor_units(alarm.stake_amount),
                window_minutes=alarm.window_minutes,
                is_active=alarm.is_active,
                last_triggered=_dt_in(alarm.last_triggered),
                created_at=_dt_in(alarm.created_at),
                updated_at=_dt_in(alarm.updated_at),
            ))
        return alarm

    @_read_retry
    async def get_alarm(self, alarm_id: UUID) -> Optional[AlarmClock]:
        async with self._db.transaction("get_alarm") as session:
            row = await session.get(AlarmRow, str(alarm_id))
            return self._row_to_alarm(row) if row else None

    async def append_alarm_log(self, log: AlarmLog) -> AlarmLog:
        async with self._db.transaction("append_alarm_log") as session:
            session.add(AlarmLogRow(
                id=str(log.id),
                alarm_id=str(log.alarm_id),
                user_id=str(log.user_id),
                window_date=log.window_date,
                entered_at=_dt_in(log.entered_at),
                code_entered=log.code_entered,
                was_successful=log.was_successful,
                penalty_minor=to_minor_units(log.penalty_applied),
                created_at=_dt_in(log.created_at),
            ))
        return log

    @_read_retry
    async def list_alarm_logs(
        self,
        alarm_id: UUID,
        since: Optional[datetime] = None,
    ) -> list[AlarmLog]:
        stmt = (
            select(AlarmLogRow)
            .where(AlarmLogRow.alarm_id == str(alarm_id))
            .order_by(AlarmLogRow.created_at.asc())
        )
        if since is not None:
            stmt = stmt.where(AlarmLogRow.created_at >= _dt_in(since))

        async with self._db.transaction("list_alarm_logs") as session:
            result = await session.execute(stmt)
            return [
                AlarmLog(
                    id=UUID(row.id),
                    alarm_id=UUID(row.alarm_id),
                    user_id=UUID(row.user_id),
                    window_date=row.window_date,
                    entered_at=_dt_out(row.entered_at),
                    code_entered=row.code_entered,
                    was_successful=row.was_successful,
                    penalty_applied=from_minor_units(row.penalty_minor),
                    created_at=_dt_out(row.created_at),
                )
                for row in result.scalars().all()
            ]

    # Tasks ------------------------------------------------------------------

    def _row_to_task(self, row: TaskRow) -> Task:
        return Task(
            id=UUID(row.id),
            user_id=UUID(row.user_id),
            goal_id=_uuid_or_none(row.goal_id),
            title=row.title,
            description=row.description,
            reward_amount=from_minor_units(row.reward_minor),
            is_completed=row.is_completed,
            completed_at=_dt_out(row.completed_at),
            due_date=row.due_date,
            created_at=_dt_out(row.created_at),
            updated_at=_dt_out(row.updated_at),
        )

    async def save_task(self, task: Task) -> Task:
        async with self._db.transaction("save_task") as session:
            await session.merge(TaskRow(
                id=str(task.id),
                user_id=str(task.user_id),
                goal_id=_str_or_none(task.goal_id),
                title=task.title,
                description=task.description,
                reward_minor=to_minor_units(task.reward_amount),
                is_completed=task.is_completed,
                completed_at=_dt_in(task.completed_at),
                due_date=task.due_date,
                created_at=_dt_in(task.created_at),
                updated_at=_dt_in(task.updated_at),
            ))
        return task

    @_read_retry
    async def get_task(self, task_id: UUID) -> Optional[Task]:
        async with self._db.transaction("get_task") as session:
            row = await session.get(TaskRow, str(task_id))
            return self._row_to_task(row) if row else None

    async def mark_task_completed(self, task_id: UUID, completed_at: datetime) -> Task:
        async with self._db.transaction("mark_task_completed") as session:
            result = await session.execute(
                update(TaskRow)
                .where(TaskRow.id == str(task_id), TaskRow.is_completed.is_(False))
                .values(
                    is_completed=True,
                    completed_at=_dt_in(completed_at),
                    updated_at=_dt_in(completed_at),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.get(TaskRow, str(task_id))
                if current is None:
                    raise NotFoundError(f"Task not found: {task_id}")
                raise VersionConflict(task_id, "open", "completed")
            row = await session.get(TaskRow, str(task_id))
            task = self._row_to_task(row)
        return task
