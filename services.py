from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Optional

from sqlalchemy import case, delete, exists, func, select, update
from sqlalchemy.orm import Session, aliased

from amounts import ensure_positive_amount, signed_amount
from database import atomic
from errors import Conflict, InvalidInput, NotFound
from models import Account, Budget, Transaction, TransactionType
from periods import Period, month_period
from recurrence import local_today, next_occurrence
from schemas import AccountIn, BudgetIn, TransactionIn


def expense_total(
    session: Session, user_id: int, account_id: int, period: Period
) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
        ).scalar_one()
        or 0
    )


def default_account(session: Session, user_id: int) -> Optional[Account]:
    return session.scalar(
        select(Account)
        .where(Account.user_id == user_id, Account.is_default.is_(True))
        .order_by(Account.id)
        .limit(1)
    )


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def transaction_counts(self) -> dict[int, int]:
        rows = self.session.execute(
            select(Transaction.account_id, func.count(Transaction.id))
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.account_id)
        ).all()
        return {account_id: int(count) for account_id, count in rows}

    def get_with_transactions(
        self, account_id: int
    ) -> tuple[Account, list[Transaction]]:
        account = self.get(account_id)
        transactions = LedgerService(self.session, self.user_id).list_for_account(
            account.id
        )
        return account, transactions

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            balance_cents=data.balance_cents,
            is_default=False,
        )
        with atomic(self.session):
            self.session.add(account)
            self.session.flush()
            if data.is_default:
                self._make_default(account.id)
            else:
                # First account (or any account while none is default) takes the flag.
                other = aliased(Account)
                self.session.execute(
                    update(Account)
                    .where(
                        Account.id == account.id,
                        ~exists().where(
                            other.user_id == self.user_id,
                            other.is_default.is_(True),
                            other.id != account.id,
                        ),
                    )
                    .values(is_default=True)
                    .execution_options(synchronize_session=False)
                )
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        with atomic(self.session):
            self._make_default(account.id)
        self.session.refresh(account)
        return account

    def _make_default(self, account_id: int) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id)
            .values(is_default=case((Account.id == account_id, True), else_=False))
            .execution_options(synchronize_session=False)
        )
        defaults = self.session.execute(
            select(func.count(Account.id)).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        ).scalar_one()
        if defaults != 1:
            raise Conflict("Default account changed concurrently; try again")
        self.session.expire_all()


class LedgerService:
    """Applies transaction changes and their balance deltas as single units.

    Every balance change is an atomic SQL increment on the account row so
    concurrent writers on the same account never lose an update.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list_for_account(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account_id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 50) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        self._validate(data)
        account = AccountService(self.session, self.user_id).get(data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            type=data.type,
            amount_cents=data.amount_cents,
            date=data.date,
            category=data.category,
            description=data.description,
            receipt_url=data.receipt_url,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval if data.is_recurring else None,
            next_recurring_date=(
                next_occurrence(data.date, data.recurring_interval)
                if data.is_recurring
                else None
            ),
            status=data.status,
        )
        with atomic(self.session):
            self.post(txn)
        self.session.refresh(txn)
        return txn

    def post(self, txn: Transaction) -> Transaction:
        """Insert the row and apply its delta without committing."""
        self.session.add(txn)
        self.session.flush()
        self._apply_delta(txn.account_id, signed_amount(txn.type, txn.amount_cents))
        return txn

    def update(
        self, transaction_id: int, data: TransactionIn, *, today: Optional[date] = None
    ) -> Transaction:
        self._validate(data)
        txn = self.get(transaction_id)
        if data.account_id != txn.account_id:
            raise InvalidInput("A transaction cannot be moved to another account")
        today = today or local_today()
        old_type, old_amount = txn.type, txn.amount_cents

        values: dict[str, object] = {
            "type": data.type,
            "amount_cents": data.amount_cents,
            "date": data.date,
            "category": data.category,
            "description": data.description,
            "receipt_url": data.receipt_url,
            "status": data.status,
            "is_recurring": data.is_recurring,
            "recurring_interval": None,
            "next_recurring_date": None,
        }
        if data.is_recurring:
            # Never schedule before the row's own date.
            values["recurring_interval"] = data.recurring_interval
            values["next_recurring_date"] = next_occurrence(
                max(today, data.date), data.recurring_interval
            )

        delta = signed_amount(data.type, data.amount_cents) - signed_amount(
            old_type, old_amount
        )
        with atomic(self.session):
            # The delta is only valid against the amount it was computed from.
            changed = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == txn.id,
                    Transaction.user_id == self.user_id,
                    Transaction.type == old_type,
                    Transaction.amount_cents == old_amount,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed != 1:
                raise Conflict(
                    "Transaction changed concurrently; reload and try again"
                )
            self._apply_delta(txn.account_id, delta)
        self.session.refresh(txn)
        return txn

    def bulk_delete(self, transaction_ids: list[int]) -> int:
        deltas: dict[int, int] = defaultdict(int)
        with atomic(self.session):
            # Only rows this statement removed are reversed.
            removed = self.session.execute(
                delete(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.id.in_(transaction_ids),
                )
                .returning(
                    Transaction.id,
                    Transaction.account_id,
                    Transaction.type,
                    Transaction.amount_cents,
                )
                .execution_options(synchronize_session=False)
            ).all()
            if not removed:
                raise NotFound("No transactions found")
            for row in removed:
                deltas[row.account_id] -= signed_amount(row.type, row.amount_cents)
            for account_id in sorted(deltas):
                self._apply_delta(account_id, deltas[account_id])

        for row in removed:
            stale = self.session.identity_map.get(
                self.session.identity_key(Transaction, row.id)
            )
            if stale is not None:
                self.session.expunge(stale)
        return len(removed)

    def _validate(self, data: TransactionIn) -> None:
        ensure_positive_amount(data.amount_cents)
        if data.is_recurring and data.recurring_interval is None:
            raise InvalidInput("Recurring transactions need an interval")
        if not data.is_recurring and data.recurring_interval is not None:
            raise InvalidInput("Only recurring transactions can have an interval")

    def _apply_delta(self, account_id: int, delta: int) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Account not found")
        account = self.session.identity_map.get(
            self.session.identity_key(Account, account_id)
        )
        if account is not None:
            self.session.expire(account, ["balance_cents"])


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn) -> Budget:
        ensure_positive_amount(data.amount_cents)
        with atomic(self.session):
            budget = self.get()
            if not budget:
                budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
                self.session.add(budget)
            else:
                budget.amount_cents = data.amount_cents
        self.session.refresh(budget)
        return budget

    def current(
        self, account_id: int, *, today: Optional[date] = None
    ) -> dict[str, object]:
        account = AccountService(self.session, self.user_id).get(account_id)
        period = month_period(today or local_today())
        return {
            "budget": self.get(),
            "current_expenses_cents": expense_total(
                self.session, self.user_id, account.id, period
            ),
        }
