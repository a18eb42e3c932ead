from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Callable, ContextManager, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from alerts import AlertLevel
from models import Budget
from notifications import AlertMessage, NotificationSink, render_budget_alert
from periods import local_today
from services import BudgetService


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class SweepResult:
    budgets_checked: int = 0
    alerts_sent: int = 0
    alerts_skipped: int = 0
    alerts_failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "budgets_checked": self.budgets_checked,
            "alerts_sent": self.alerts_sent,
            "alerts_skipped": self.alerts_skipped,
            "alerts_failed": self.alerts_failed,
        }


class BudgetAlertNotifier:
    """Evaluates every active budget and notifies owners of non-safe ones.

    Each budget is handled in its own session, so a failure while evaluating
    or delivering one budget is logged and counted without touching the rest.
    Rendering happens inside the session; delivery happens after it closes.
    Running the sweep twice re-sends every alert that is still non-safe.
    Passing ``user_id`` limits the sweep to that owner's budgets.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        sink: NotificationSink,
        *,
        max_workers: int = 1,
        currency_code: Optional[str] = None,
        app_url: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.sink = sink
        self.max_workers = max(1, max_workers)
        self.currency_code = currency_code
        self.app_url = app_url

    def _active_budget_ids(self, user_id: Optional[int] = None) -> list[int]:
        with self.session_factory() as session:
            stmt = select(Budget.id).where(Budget.is_active.is_(True))
            if user_id is not None:
                stmt = stmt.where(Budget.user_id == user_id)
            stmt = stmt.order_by(Budget.id)
            return list(session.scalars(stmt).all())

    def sweep(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> SweepResult:
        today = today or local_today()
        budget_ids = self._active_budget_ids(user_id)
        scope = "all" if user_id is None else f"user={user_id}"
        logger.info(
            f"budget_sweep: started scope={scope} budgets={len(budget_ids)} "
            f"today={today.isoformat()}"
        )

        if self.max_workers > 1 and len(budget_ids) > 1:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="budget-sweep"
            ) as pool:
                outcomes = list(
                    pool.map(lambda bid: self.process_budget(bid, today), budget_ids)
                )
        else:
            outcomes = [self.process_budget(bid, today) for bid in budget_ids]

        result = SweepResult(
            budgets_checked=len(budget_ids),
            alerts_sent=outcomes.count(SENT),
            alerts_skipped=outcomes.count(SKIPPED),
            alerts_failed=outcomes.count(FAILED),
        )
        logger.info(
            f"budget_sweep: finished budgets_checked={result.budgets_checked} "
            f"alerts_sent={result.alerts_sent} alerts_skipped={result.alerts_skipped} "
            f"alerts_failed={result.alerts_failed}"
        )
        return result

    def process_budget(self, budget_id: int, today: date) -> str:
        try:
            prepared = self._prepare(budget_id, today)
        except Exception:
            logger.exception(f"budget_sweep: evaluation failed budget={budget_id}")
            return FAILED
        if prepared is None:
            return SKIPPED

        email, message = prepared
        try:
            result = self.sink.send(email, message.subject, message.html, message.text)
        except Exception:
            logger.exception(
                f"budget_sweep: delivery failed budget={budget_id} to={email}"
            )
            return FAILED
        if not result.delivered:
            logger.warning(
                f"budget_sweep: not delivered budget={budget_id} "
                f"provider={result.provider} detail={result.detail}"
            )
        return SENT

    def _prepare(
        self, budget_id: int, today: date
    ) -> Optional[tuple[str, AlertMessage]]:
        with self.session_factory() as session:
            budget = session.scalar(
                select(Budget)
                .options(joinedload(Budget.user), joinedload(Budget.category))
                .where(Budget.id == budget_id)
            )
            if budget is None or not budget.is_active:
                logger.info(f"budget_sweep: skipped budget={budget_id} reason=inactive")
                return None
            if budget.user is None or not budget.user.email:
                logger.info(f"budget_sweep: skipped budget={budget_id} reason=no_email")
                return None

            alert = BudgetService(session, budget.user_id).evaluate(budget, today)
            if alert.level == AlertLevel.safe:
                logger.info(
                    f"budget_sweep: ok budget={budget_id} "
                    f"percentage={alert.percentage:.1f}"
                )
                return None

            logger.info(
                f"budget_sweep: alert budget={budget_id} level={alert.level.value} "
                f"percentage={alert.percentage:.1f} to={budget.user.email}"
            )
            message = render_budget_alert(
                alert,
                user_name=budget.user.username,
                currency_code=self.currency_code,
                app_url=self.app_url,
            )
            return budget.user.email, message
