from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from alerts import BudgetAlert, BudgetAlertSummary
from models import (
    Account,
    Budget,
    Category,
    Transaction,
    TransactionType,
)
from periods import Period, budget_window, local_today, month_window
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    TransactionIn,
    TransactionPatch,
)


logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class NotFound(ValueError):
    pass


class ValidationError(ValueError):
    pass


class Unauthorized(Exception):
    pass


class Conflict(ValueError):
    pass


def require_owner(user_id: Optional[int]) -> int:
    if user_id is None:
        raise Unauthorized("Not authenticated")
    return user_id


def reject_cleared(changes: dict[str, object], fields: tuple[str, ...]) -> None:
    for field in fields:
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be cleared")


class _Posting(Protocol):
    type: TransactionType
    amount_cents: int
    account_id: int
    transfer_from_account_id: Optional[int]
    transfer_to_account_id: Optional[int]


def balance_effects(txn: _Posting) -> dict[int, int]:
    """Signed balance change per account that ``txn`` contributes."""
    effects: dict[int, int] = {}

    def add(account_id: Optional[int], delta: int) -> None:
        if account_id is None:
            return
        effects[account_id] = effects.get(account_id, 0) + delta

    if txn.type == TransactionType.income:
        add(txn.account_id, txn.amount_cents)
    elif txn.type == TransactionType.expense:
        add(txn.account_id, -txn.amount_cents)
    elif txn.type == TransactionType.transfer:
        add(txn.transfer_from_account_id, -txn.amount_cents)
        add(txn.transfer_to_account_id, txn.amount_cents)
    return effects


def net_effects(old: dict[int, int], new: dict[int, int]) -> dict[int, int]:
    deltas: dict[int, int] = {}
    for account_id in set(old) | set(new):
        delta = new.get(account_id, 0) - old.get(account_id, 0)
        if delta:
            deltas[account_id] = delta
    return deltas


def apply_balance_deltas(
    session: Session, user_id: int, deltas: dict[int, int]
) -> None:
    # Ascending id order keeps lock acquisition consistent across writers.
    for account_id in sorted(deltas):
        delta = deltas[account_id]
        if not delta:
            continue
        result = session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise RuntimeError(
                f"Balance update matched {result.rowcount} rows "
                f"for account {account_id}"
            )


def _clean_tags(tags: list[str]) -> list[str]:
    return list(dict.fromkeys(t.strip() for t in tags if t.strip()))


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    period: Optional[Period] = None


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def list_all(self, include_inactive: bool = True) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            currency_code=data.currency_code.upper(),
            balance_cents=data.initial_balance_cents,
            initial_balance_cents=data.initial_balance_cents,
            is_active=data.is_active,
            color=data.color,
            icon=data.icon,
            description=data.description,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountPatch) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        reject_cleared(changes, ("name", "type", "currency_code", "is_active"))
        new_initial = changes.pop("initial_balance_cents", None)
        try:
            if new_initial is not None and new_initial != account.initial_balance_cents:
                # The cached balance moves by the same delta so the ledger sum holds.
                delta = new_initial - account.initial_balance_cents
                account.initial_balance_cents = new_initial
                self.session.flush()
                apply_balance_deltas(self.session, self.user_id, {account.id: delta})
            for field, value in changes.items():
                if field == "currency_code" and value:
                    value = value.upper()
                setattr(account, field, value)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.transfer_from_account_id == account.id,
                        Transaction.transfer_to_account_id == account.id,
                    )
                )
            ).scalar_one()
            or 0
        )
        if in_use:
            raise ValidationError(
                "Account has transactions; delete or move them first"
            )
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _ensure_unique(
        self, name: str, type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        if data.type == TransactionType.transfer:
            raise ValidationError("Categories are either income or expense")
        name = data.name.strip()
        self._ensure_unique(name, data.type)
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            description=data.description,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryPatch) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        reject_cleared(changes, ("name",))
        if changes.get("name"):
            changes["name"] = changes["name"].strip()
            self._ensure_unique(changes["name"], category.type, exclude_id=category.id)
        for field, value in changes.items():
            setattr(category, field, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        budgets = int(
            self.session.execute(
                select(func.count(Budget.id)).where(Budget.category_id == category.id)
            ).scalar_one()
            or 0
        )
        if budgets:
            raise ValidationError("Category is used by budgets; delete them first")
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(category)
        self.session.commit()


class LedgerService:
    """Sole writer of ``Account.balance_cents`` for transaction changes.

    Every mutation writes the transaction row and the balance increments it
    implies in one database transaction. Increments are issued as
    ``balance = balance + delta`` so concurrent writers on the same account
    serialize in the database instead of overwriting each other.
    """

    _POSTING_FIELDS = (
        "type",
        "account_id",
        "category_id",
        "transfer_from_account_id",
        "transfer_to_account_id",
    )

    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def _require_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _validate_posting(
        self,
        type: TransactionType,
        account_id: int,
        category_id: Optional[int],
        transfer_from_account_id: Optional[int],
        transfer_to_account_id: Optional[int],
    ) -> None:
        if type == TransactionType.transfer:
            if transfer_from_account_id is None or transfer_to_account_id is None:
                raise ValidationError(
                    "Transfers require source and destination accounts"
                )
            if transfer_from_account_id == transfer_to_account_id:
                raise ValidationError("Transfer source and destination must differ")
            if category_id is not None:
                raise ValidationError("Transfers cannot have a category")
        elif transfer_from_account_id is not None or transfer_to_account_id is not None:
            raise ValidationError("Only transfers may reference transfer accounts")

        self._require_account(account_id)
        if type == TransactionType.transfer:
            self._require_account(transfer_from_account_id)
            self._require_account(transfer_to_account_id)
        elif category_id is not None:
            category = self._require_category(category_id)
            if category.type != type:
                raise ValidationError("Category type mismatch")

    @staticmethod
    def _validate_recurrence(is_recurring: bool, frequency: object) -> None:
        if is_recurring and frequency is None:
            raise ValidationError("Recurring transactions need a frequency")

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(
        self, filters: Optional[TransactionFilters] = None, limit: int = 100
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.transfer_from_account_id == filters.account_id,
                    Transaction.transfer_to_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.period:
            stmt = stmt.where(
                Transaction.date.between(filters.period.start, filters.period.end)
            )
        return self.session.scalars(stmt).all()

    def post(self, data: TransactionIn) -> Transaction:
        self._validate_posting(
            data.type,
            data.account_id,
            data.category_id,
            data.transfer_from_account_id,
            data.transfer_to_account_id,
        )
        self._validate_recurrence(data.is_recurring, data.recurring_frequency)
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            type=data.type,
            amount_cents=data.amount_cents,
            date=data.date,
            description=data.description.strip(),
            notes=data.notes,
            tags=_clean_tags(data.tags),
            is_recurring=data.is_recurring,
            recurring_frequency=data.recurring_frequency if data.is_recurring else None,
            transfer_from_account_id=data.transfer_from_account_id,
            transfer_to_account_id=data.transfer_to_account_id,
        )
        self.session.add(txn)
        try:
            self.session.flush()
            apply_balance_deltas(self.session, self.user_id, balance_effects(txn))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(
            f"ledger_post: user={self.user_id} txn={txn.id} type={txn.type.value} "
            f"amount_cents={txn.amount_cents}"
        )
        return txn

    def amend(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        reject_cleared(
            changes,
            (
                "type",
                "account_id",
                "amount_cents",
                "date",
                "description",
                "is_recurring",
            ),
        )

        final = {
            field: changes.get(field, getattr(txn, field))
            for field in self._POSTING_FIELDS
        }
        if final["type"] != TransactionType.transfer:
            for field in ("transfer_from_account_id", "transfer_to_account_id"):
                if field not in changes:
                    final[field] = None
        elif "category_id" not in changes:
            final["category_id"] = None
        self._validate_posting(**final)
        is_recurring = changes.get("is_recurring", txn.is_recurring)
        frequency = changes.get("recurring_frequency", txn.recurring_frequency)
        self._validate_recurrence(is_recurring, frequency)

        # Reverse with the stored values, re-apply with the final ones.
        old_effects = balance_effects(txn)
        try:
            for field, value in final.items():
                setattr(txn, field, value)
            for field, value in changes.items():
                if field in final:
                    continue
                if field == "description":
                    value = value.strip()
                elif field == "tags":
                    value = _clean_tags(value or [])
                setattr(txn, field, value)
            if not txn.is_recurring:
                txn.recurring_frequency = None
            deltas = net_effects(old_effects, balance_effects(txn))
            self.session.flush()
            apply_balance_deltas(self.session, self.user_id, deltas)
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise Conflict(
                f"Transaction {transaction_id} was changed concurrently; reload it"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(
            f"ledger_amend: user={self.user_id} txn={txn.id} "
            f"accounts_touched={len(deltas)}"
        )
        return txn

    def retract(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        reversal = {k: -v for k, v in balance_effects(txn).items()}
        try:
            self.session.delete(txn)
            self.session.flush()
            apply_balance_deltas(self.session, self.user_id, reversal)
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise Conflict(
                f"Transaction {transaction_id} was changed concurrently; reload it"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"ledger_retract: user={self.user_id} txn={transaction_id}")

    def recompute_balance(self, account_id: int) -> int:
        """Balance implied by the initial balance plus every stored transaction."""
        account = self._require_account(account_id)

        def total(*criteria) -> int:
            return int(
                self.session.execute(
                    select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                        Transaction.user_id == self.user_id, *criteria
                    )
                ).scalar_one()
                or 0
            )

        income = total(
            Transaction.type == TransactionType.income,
            Transaction.account_id == account_id,
        )
        expenses = total(
            Transaction.type == TransactionType.expense,
            Transaction.account_id == account_id,
        )
        transfers_in = total(
            Transaction.type == TransactionType.transfer,
            Transaction.transfer_to_account_id == account_id,
        )
        transfers_out = total(
            Transaction.type == TransactionType.transfer,
            Transaction.transfer_from_account_id == account_id,
        )
        return (
            account.initial_balance_cents
            + income
            - expenses
            + transfers_in
            - transfers_out
        )

    def rebuild_balance(self, account_id: int) -> int:
        expected = self.recompute_balance(account_id)
        account = self._require_account(account_id)
        if account.balance_cents != expected:
            logger.warning(
                f"ledger_rebuild: account={account_id} cached={account.balance_cents} "
                f"expected={expected}"
            )
        self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=expected)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return expected


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def list_all(self, *, active_only: bool = False) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def _require_expense_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        if category.type != TransactionType.expense:
            raise ValidationError("Budgets can only be set for expense categories")
        return category

    @staticmethod
    def _validate_dates(start_date: date, end_date: Optional[date]) -> None:
        if end_date is not None and end_date < start_date:
            raise ValidationError("Budget end date must not precede its start date")

    def create(self, data: BudgetIn) -> Budget:
        self._require_expense_category(data.category_id)
        self._validate_dates(data.start_date, data.end_date)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            is_active=data.is_active,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetPatch) -> Budget:
        budget = self.get(budget_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("category_id") is not None:
            self._require_expense_category(changes["category_id"])
        elif "category_id" in changes:
            raise ValidationError("Budgets need a category")
        reject_cleared(
            changes, ("name", "amount_cents", "period", "start_date", "is_active")
        )
        self._validate_dates(
            changes.get("start_date", budget.start_date),
            changes.get("end_date", budget.end_date),
        )
        for field, value in changes.items():
            setattr(budget, field, value.strip() if field == "name" else value)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    @staticmethod
    def window_for(budget: Budget, today: date) -> Period:
        return budget_window(budget.period, budget.start_date, today, budget.end_date)

    def spent_for_window(self, category_id: int, window: Period) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(window.start, window.end),
                )
            ).scalar_one()
            or 0
        )

    def evaluate(self, budget: Budget, today: Optional[date] = None) -> BudgetAlert:
        if budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        window = self.window_for(budget, today or local_today())
        spent = self.spent_for_window(budget.category_id, window)
        return BudgetAlert.build(budget, window, spent)

    def alerts(self, today: Optional[date] = None) -> BudgetAlertSummary:
        today = today or local_today()
        return BudgetAlertSummary(
            [self.evaluate(b, today) for b in self.list_all(active_only=True)]
        )


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def summarize(self, today: Optional[date] = None) -> dict[str, object]:
        window = month_window(today or local_today())

        accounts = AccountService(self.session, self.user_id).list_all(
            include_inactive=False
        )

        totals = {
            row.type: int(row.total or 0)
            for row in self.session.execute(
                select(
                    Transaction.type,
                    func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                )
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.type.in_(
                        [TransactionType.income, TransactionType.expense]
                    ),
                    Transaction.date.between(window.start, window.end),
                )
                .group_by(Transaction.type)
            )
        }

        return {
            "period": window,
            "total_balance_cents": sum(a.balance_cents for a in accounts),
            "accounts_count": len(accounts),
            "monthly_income_cents": totals.get(TransactionType.income, 0),
            "monthly_expenses_cents": totals.get(TransactionType.expense, 0),
            "recent_transactions": LedgerService(self.session, self.user_id).list(
                limit=10
            ),
            "expenses_by_category": self.expenses_by_category(window),
        }

    def expenses_by_category(self, window: Period) -> list[dict[str, object]]:
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("name"),
                Category.color.label("color"),
                func.sum(Transaction.amount_cents).label("total"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(window.start, window.end),
            )
            .group_by(Category.id, Category.name, Category.color)
        )
        breakdown = [
            {
                "category_id": row.category_id,
                "name": row.name if row.category_id is not None else UNCATEGORIZED,
                "total_cents": int(row.total or 0),
                "color": row.color,
            }
            for row in self.session.execute(stmt)
        ]
        breakdown.sort(key=lambda r: int(r["total_cents"]), reverse=True)
        return breakdown
