from datetime import date, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType, TransactionType, User
from schemas import AccountIn, CategoryIn, TransactionIn
from services import AccountService, CategoryService, DashboardService, LedgerService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_dashboard_totals_breakdown_and_recent() -> None:
    session = make_session()
    user = User(email="owner@example.com", username="Owner")
    session.add(user)
    session.commit()

    accounts = AccountService(session, user.id)
    checking = accounts.create(
        AccountIn(
            name="Checking", type=AccountType.checking, initial_balance_cents=10_000
        )
    )
    savings = accounts.create(
        AccountIn(name="Savings", type=AccountType.savings, initial_balance_cents=5_000)
    )
    accounts.create(
        AccountIn(
            name="Old card",
            type=AccountType.credit_card,
            initial_balance_cents=99_000,
            is_active=False,
        )
    )
    categories = CategoryService(session, user.id)
    food = categories.create(
        CategoryIn(name="Food", type=TransactionType.expense, color="#ff0000")
    )
    rent = categories.create(CategoryIn(name="Rent", type=TransactionType.expense))
    ledger = LedgerService(session, user.id)

    def post(type, amount, day, category_id=None, **extra):
        return ledger.post(
            TransactionIn(
                account_id=extra.pop("account_id", checking.id),
                type=type,
                amount_cents=amount,
                date=day,
                description=extra.pop("description", f"{type.value} {amount}"),
                category_id=category_id,
                **extra,
            )
        )

    post(TransactionType.income, 50_000, date(2024, 5, 1))
    post(TransactionType.expense, 3_000, date(2024, 5, 2), food.id)
    post(TransactionType.expense, 1_000, date(2024, 5, 3), food.id)
    post(TransactionType.expense, 20_000, date(2024, 5, 4), rent.id)
    post(TransactionType.expense, 700, date(2024, 5, 5))
    post(TransactionType.expense, 9_999, date(2024, 4, 30), food.id)
    post(
        TransactionType.transfer,
        2_500,
        date(2024, 5, 6),
        transfer_from_account_id=checking.id,
        transfer_to_account_id=savings.id,
    )
    for i in range(8):
        post(TransactionType.income, 1, date(2024, 5, 10) + timedelta(days=i))

    summary = DashboardService(session, user.id).summarize(date(2024, 5, 20))

    assert summary["accounts_count"] == 2
    assert summary["total_balance_cents"] == (
        10_000 + 5_000 + 50_000 + 8 - 3_000 - 1_000 - 20_000 - 700 - 9_999
    )
    assert summary["monthly_income_cents"] == 50_008
    assert summary["monthly_expenses_cents"] == 24_700
    assert (summary["period"].start, summary["period"].end) == (
        date(2024, 5, 1),
        date(2024, 5, 31),
    )

    recent = summary["recent_transactions"]
    assert len(recent) == 10
    assert recent[0].date == date(2024, 5, 17)
    assert all(t.date >= date(2024, 5, 5) for t in recent)

    assert summary["expenses_by_category"] == [
        {
            "category_id": rent.id,
            "name": "Rent",
            "total_cents": 20_000,
            "color": None,
        },
        {
            "category_id": food.id,
            "name": "Food",
            "total_cents": 4_000,
            "color": "#ff0000",
        },
        {
            "category_id": None,
            "name": "Uncategorized",
            "total_cents": 700,
            "color": None,
        },
    ]


def test_dashboard_for_a_new_owner_is_empty() -> None:
    session = make_session()
    user = User(email="new@example.com")
    session.add(user)
    session.commit()

    summary = DashboardService(session, user.id).summarize(date(2024, 5, 20))

    assert summary["total_balance_cents"] == 0
    assert summary["accounts_count"] == 0
    assert summary["monthly_income_cents"] == 0
    assert summary["monthly_expenses_cents"] == 0
    assert summary["recent_transactions"] == []
    assert summary["expenses_by_category"] == []


def test_category_named_uncategorized_keeps_its_own_bucket() -> None:
    session = make_session()
    user = User(email="owner@example.com", username="Owner")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(
        AccountIn(name="Wallet", type=AccountType.cash, initial_balance_cents=0)
    )
    named = CategoryService(session, user.id).create(
        CategoryIn(name="Uncategorized", type=TransactionType.expense, color="#999")
    )
    ledger = LedgerService(session, user.id)
    for amount, category_id in ((500, named.id), (200, None)):
        ledger.post(
            TransactionIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount_cents=amount,
                date=date(2024, 5, 2),
                description="Misc",
                category_id=category_id,
            )
        )

    breakdown = DashboardService(session, user.id).summarize(date(2024, 5, 20))[
        "expenses_by_category"
    ]

    assert breakdown == [
        {
            "category_id": named.id,
            "name": "Uncategorized",
            "total_cents": 500,
            "color": "#999",
        },
        {
            "category_id": None,
            "name": "Uncategorized",
            "total_cents": 200,
            "color": None,
        },
    ]
