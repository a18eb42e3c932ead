import threading
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import services
from database import Base
from models import (
    Account,
    AccountType,
    RecurringFrequency,
    Transaction,
    TransactionType,
    User,
)
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionPatch
from services import (
    AccountService,
    CategoryService,
    Conflict,
    LedgerService,
    NotFound,
    TransactionFilters,
    Unauthorized,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_user(session, email="owner@example.com") -> User:
    user = User(email=email, username="Owner")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def add_account(session, user_id: int, name: str, initial: int = 0) -> Account:
    return AccountService(session, user_id).create(
        AccountIn(name=name, type=AccountType.checking, initial_balance_cents=initial)
    )


def balance(session, account_id: int) -> int:
    return session.scalar(
        select(Account.balance_cents).where(Account.id == account_id)
    )


def expense(account_id: int, amount: int, **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        type=TransactionType.expense,
        amount_cents=amount,
        date=extra.pop("date", date(2024, 3, 10)),
        description=extra.pop("description", "Groceries"),
        **extra,
    )


def transfer(from_id: int, to_id: int, amount: int) -> TransactionIn:
    return TransactionIn(
        account_id=from_id,
        type=TransactionType.transfer,
        amount_cents=amount,
        date=date(2024, 3, 10),
        description="Move savings",
        transfer_from_account_id=from_id,
        transfer_to_account_id=to_id,
    )


def test_balance_matches_recomputed_ledger_after_mixed_operations() -> None:
    session = make_session()
    user = add_user(session)
    checking = add_account(session, user.id, "Checking", initial=50_000)
    savings = add_account(session, user.id, "Savings", initial=10_000)
    ledger = LedgerService(session, user.id)

    salary = ledger.post(
        TransactionIn(
            account_id=checking.id,
            type=TransactionType.income,
            amount_cents=300_000,
            date=date(2024, 3, 1),
            description="Salary",
        )
    )
    rent = ledger.post(expense(checking.id, 120_000, description="Rent"))
    move = ledger.post(transfer(checking.id, savings.id, 40_000))
    ledger.amend(rent.id, TransactionPatch(amount_cents=110_000))
    ledger.amend(salary.id, TransactionPatch(account_id=savings.id))
    ledger.retract(move.id)

    for account in (checking, savings):
        assert balance(session, account.id) == ledger.recompute_balance(account.id)
    assert balance(session, checking.id) == 50_000 - 110_000
    assert balance(session, savings.id) == 10_000 + 300_000


def test_post_then_amend_then_retract_reverses_exactly() -> None:
    session = make_session()
    user = add_user(session)
    account = add_account(session, user.id, "Wallet", initial=100)
    ledger = LedgerService(session, user.id)

    txn = ledger.post(expense(account.id, 30))
    assert balance(session, account.id) == 70

    ledger.amend(txn.id, TransactionPatch(amount_cents=60))
    assert balance(session, account.id) == 40

    ledger.retract(txn.id)
    assert balance(session, account.id) == 100


def test_amend_type_from_expense_to_income_flips_the_sign() -> None:
    session = make_session()
    user = add_user(session)
    account = add_account(session, user.id, "Wallet", initial=1_000)
    ledger = LedgerService(session, user.id)

    txn = ledger.post(expense(account.id, 200))
    ledger.amend(txn.id, TransactionPatch(type=TransactionType.income))

    assert balance(session, account.id) == 1_200


def test_amend_moves_amount_between_accounts() -> None:
    session = make_session()
    user = add_user(session)
    first = add_account(session, user.id, "First", initial=1_000)
    second = add_account(session, user.id, "Second", initial=1_000)
    ledger = LedgerService(session, user.id)

    txn = ledger.post(expense(first.id, 250))
    ledger.amend(txn.id, TransactionPatch(account_id=second.id))

    assert balance(session, first.id) == 1_000
    assert balance(session, second.id) == 750


def test_transfer_moves_money_without_changing_the_total() -> None:
    session = make_session()
    user = add_user(session)
    a = add_account(session, user.id, "A", initial=1_000)
    b = add_account(session, user.id, "B", initial=500)
    ledger = LedgerService(session, user.id)

    ledger.post(transfer(a.id, b.id, 300))

    assert balance(session, a.id) == 700
    assert balance(session, b.id) == 800
    assert balance(session, a.id) + balance(session, b.id) == 1_500


def test_transfer_amend_and_retract_reverse_both_sides() -> None:
    session = make_session()
    user = add_user(session)
    a = add_account(session, user.id, "A", initial=1_000)
    b = add_account(session, user.id, "B", initial=0)
    c = add_account(session, user.id, "C", initial=0)
    ledger = LedgerService(session, user.id)

    txn = ledger.post(transfer(a.id, b.id, 400))
    ledger.amend(
        txn.id, TransactionPatch(amount_cents=100, transfer_to_account_id=c.id)
    )
    assert balance(session, a.id) == 900
    assert balance(session, b.id) == 0
    assert balance(session, c.id) == 100

    ledger.retract(txn.id)
    assert balance(session, a.id) == 1_000
    assert balance(session, c.id) == 0


def test_amend_transfer_into_expense_drops_transfer_accounts() -> None:
    session = make_session()
    user = add_user(session)
    a = add_account(session, user.id, "A", initial=1_000)
    b = add_account(session, user.id, "B", initial=0)
    ledger = LedgerService(session, user.id)

    txn = ledger.post(transfer(a.id, b.id, 300))
    updated = ledger.amend(txn.id, TransactionPatch(type=TransactionType.expense))

    assert updated.transfer_from_account_id is None
    assert updated.transfer_to_account_id is None
    assert balance(session, a.id) == 700
    assert balance(session, b.id) == 0


def test_invalid_posting_is_rejected_before_any_write() -> None:
    session = make_session()
    user = add_user(session)
    account = add_account(session, user.id, "Wallet", initial=500)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=TransactionType.income)
    )
    ledger = LedgerService(session, user.id)

    with pytest.raises(ValidationError):
        ledger.post(expense(account.id, 100, category_id=salary.id))
    with pytest.raises(ValidationError):
        ledger.post(transfer(account.id, account.id, 100))
    with pytest.raises(ValidationError):
        ledger.post(expense(account.id, 100, is_recurring=True))
    with pytest.raises(NotFound):
        ledger.post(expense(account.id + 99, 100))

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert balance(session, account.id) == 500


def test_failed_balance_update_rolls_back_the_transaction_row(monkeypatch) -> None:
    session = make_session()
    user = add_user(session)
    account = add_account(session, user.id, "Wallet", initial=500)
    ledger = LedgerService(session, user.id)

    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(services, "apply_balance_deltas", broken)
    with pytest.raises(RuntimeError):
        ledger.post(expense(account.id, 100))

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert balance(session, account.id) == 500


def test_other_owners_records_are_not_found() -> None:
    session = make_session()
    alice = add_user(session, "alice@example.com")
    bob = add_user(session, "bob@example.com")
    account = add_account(session, alice.id, "Alice checking", initial=100)
    txn = LedgerService(session, alice.id).post(expense(account.id, 10))

    bobs_ledger = LedgerService(session, bob.id)
    with pytest.raises(NotFound):
        bobs_ledger.get(txn.id)
    with pytest.raises(NotFound):
        bobs_ledger.retract(txn.id)
    with pytest.raises(NotFound):
        bobs_ledger.post(expense(account.id, 10))
    assert balance(session, account.id) == 90


def test_services_require_an_owner() -> None:
    session = make_session()
    with pytest.raises(Unauthorized):
        LedgerService(session, None)


def test_list_filters_by_account_including_transfer_sides() -> None:
    session = make_session()
    user = add_user(session)
    a = add_account(session, user.id, "A", initial=1_000)
    b = add_account(session, user.id, "B", initial=0)
    ledger = LedgerService(session, user.id)

    ledger.post(expense(a.id, 10, date=date(2024, 3, 1)))
    ledger.post(transfer(a.id, b.id, 20))
    ledger.post(
        TransactionIn(
            account_id=b.id,
            type=TransactionType.income,
            amount_cents=5,
            date=date(2024, 4, 1),
            description="Interest",
            is_recurring=True,
            recurring_frequency=RecurringFrequency.monthly,
        )
    )

    for_b = ledger.list(TransactionFilters(account_id=b.id))
    assert [t.description for t in for_b] == ["Interest", "Move savings"]
    expenses = ledger.list(TransactionFilters(type=TransactionType.expense))
    assert [t.amount_cents for t in expenses] == [10]


def test_rebuild_balance_repairs_a_drifted_cache() -> None:
    session = make_session()
    user = add_user(session)
    account = add_account(session, user.id, "Wallet", initial=1_000)
    ledger = LedgerService(session, user.id)
    ledger.post(expense(account.id, 300))

    account.balance_cents = 12_345
    session.commit()

    assert ledger.rebuild_balance(account.id) == 700
    assert balance(session, account.id) == 700


def make_factory(path):
    engine = create_engine(
        f"sqlite+pysqlite:///{path}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def seed_wallet(factory):
    with factory() as session:
        user = add_user(session)
        account = add_account(session, user.id, "Wallet", initial=1_000)
        txn = LedgerService(session, user.id).post(expense(account.id, 30))
        return user.id, account.id, txn.id


def interleave(monkeypatch, factory, user_id, first, second):
    """Run ``first`` in a thread, hold it right after it has read the stored
    balance effects, and run ``second`` to completion in the meantime."""
    paused = threading.Event()
    resume = threading.Event()
    original = services.balance_effects

    def holding(txn):
        effects = original(txn)
        if threading.current_thread().name == "first" and not paused.is_set():
            paused.set()
            resume.wait(5)
        return effects

    monkeypatch.setattr(services, "balance_effects", holding)
    errors = []

    def run_first():
        with factory() as session:
            try:
                first(LedgerService(session, user_id))
            except Exception as exc:
                errors.append(exc)

    thread = threading.Thread(target=run_first, name="first")
    thread.start()
    assert paused.wait(5)
    try:
        with factory() as session:
            second(LedgerService(session, user_id))
    finally:
        resume.set()
        thread.join(5)
    return errors


def test_concurrent_amends_keep_the_cached_balance_consistent(
    monkeypatch, tmp_path
) -> None:
    factory = make_factory(tmp_path / "ledger.db")
    user_id, account_id, txn_id = seed_wallet(factory)

    errors = interleave(
        monkeypatch,
        factory,
        user_id,
        lambda ledger: ledger.amend(txn_id, TransactionPatch(amount_cents=70)),
        lambda ledger: ledger.amend(txn_id, TransactionPatch(amount_cents=40)),
    )

    assert len(errors) == 1
    assert isinstance(errors[0], Conflict)
    with factory() as session:
        ledger = LedgerService(session, user_id)
        assert balance(session, account_id) == 960
        assert ledger.recompute_balance(account_id) == 960

        ledger.amend(txn_id, TransactionPatch(amount_cents=70))
        assert balance(session, account_id) == 930
        assert ledger.recompute_balance(account_id) == 930


def test_retract_racing_an_amend_is_rejected(monkeypatch, tmp_path) -> None:
    factory = make_factory(tmp_path / "ledger.db")
    user_id, account_id, txn_id = seed_wallet(factory)

    errors = interleave(
        monkeypatch,
        factory,
        user_id,
        lambda ledger: ledger.retract(txn_id),
        lambda ledger: ledger.amend(txn_id, TransactionPatch(amount_cents=40)),
    )

    assert [type(e) for e in errors] == [Conflict]
    with factory() as session:
        assert balance(session, account_id) == 960
        assert LedgerService(session, user_id).get(txn_id).amount_cents == 40


def test_amend_racing_a_retract_is_rejected(monkeypatch, tmp_path) -> None:
    factory = make_factory(tmp_path / "ledger.db")
    user_id, account_id, txn_id = seed_wallet(factory)

    errors = interleave(
        monkeypatch,
        factory,
        user_id,
        lambda ledger: ledger.amend(txn_id, TransactionPatch(amount_cents=70)),
        lambda ledger: ledger.retract(txn_id),
    )

    assert [type(e) for e in errors] == [Conflict]
    with factory() as session:
        assert balance(session, account_id) == 1_000
        assert LedgerService(session, user_id).recompute_balance(account_id) == 1_000
