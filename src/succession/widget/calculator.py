"""Transition countdown widget.

Shows the sitting President and Past President how many days remain until
the next term boundary, starting ``lead_days`` before it. When a plan is
scheduled for that boundary, the widget also reports its status and which
approvals it still needs.

TransitionWidgetCalculator is pure date arithmetic. TransitionWidget adds
the incumbency gate and the plan lookup, both of which read the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from succession.errors import ForbiddenError, ValidationError
from succession.models.transition import ApprovalRole, TransitionPlan, TransitionStatus
from succession.persistence.database import UnitOfWork, as_utc
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore
from succession.policy.resolver import PolicyResolver
from succession.widget.calendar import TermCalendar

DEFAULT_LEAD_DAYS = 60


class TransitionWidgetCalculator:
    """Countdown arithmetic over a TermCalendar."""

    def __init__(self, calendar: TermCalendar, lead_days: int = DEFAULT_LEAD_DAYS) -> None:
        if lead_days < 0:
            raise ValueError(f"lead_days must be non-negative, got {lead_days}")
        self._calendar = calendar
        self._lead_days = lead_days

    @classmethod
    def from_resolver(cls, resolver: PolicyResolver) -> TransitionWidgetCalculator:
        return cls(TermCalendar.from_resolver(resolver), resolver.widget_lead_days())

    @property
    def calendar(self) -> TermCalendar:
        return self._calendar

    @property
    def lead_days(self) -> int:
        return self._lead_days

    def next_transition_date(self, now: datetime) -> datetime:
        return self._calendar.next_transition_date(now)

    def show_at(self, transition_date: datetime, lead_days: Optional[int] = None) -> datetime:
        """Local midnight ``lead_days`` before the transition day."""
        lead = self._lead_days if lead_days is None else lead_days
        return self._calendar.days_before(transition_date, lead)

    def days_remaining(self, now: datetime, transition_date: datetime) -> int:
        """Club-calendar days from today until the transition day, never negative."""
        delta = (
            self._calendar.local_date(transition_date)
            - self._calendar.local_date(now)
        ).days
        return max(0, delta)

    def is_visible(
        self,
        now: datetime,
        transition_date: Optional[datetime] = None,
        lead_days: Optional[int] = None,
    ) -> bool:
        now = as_utc(now)
        if transition_date is None:
            transition_date = self.next_transition_date(now)
        return self.show_at(transition_date, lead_days) <= now < as_utc(transition_date)


@dataclass(frozen=True)
class WidgetContext:
    """Why a member may see the widget."""
    member_id: str
    viewer_role: str
    role_title: str
    record_id: str


@dataclass(frozen=True)
class WidgetPlanStatus:
    plan_id: str
    name: str
    status: TransitionStatus
    president_approved: bool
    vp_activities_approved: bool

    @classmethod
    def from_plan(cls, plan: TransitionPlan) -> WidgetPlanStatus:
        return cls(
            plan_id=plan.plan_id,
            name=plan.name,
            status=plan.status,
            president_approved=plan.approval_for(ApprovalRole.PRESIDENT) is not None,
            vp_activities_approved=(
                plan.approval_for(ApprovalRole.VP_ACTIVITIES) is not None
            ),
        )


@dataclass(frozen=True)
class WidgetData:
    visible: bool
    next_transition_date: datetime
    days_remaining: int
    term_name: str
    lead_days: int
    show_at: datetime
    plan: Optional[WidgetPlanStatus] = None
    context: Optional[WidgetContext] = None


class TransitionWidget:
    """Incumbency-gated widget reads."""

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger: ServiceRecordLedger,
        store: TransitionPlanStore,
        calculator: Optional[TransitionWidgetCalculator] = None,
    ) -> None:
        self._viewer_titles = resolver.widget_viewer_titles()
        self._ledger = ledger
        self._store = store
        self._calculator = calculator or TransitionWidgetCalculator.from_resolver(resolver)

    @property
    def calculator(self) -> TransitionWidgetCalculator:
        return self._calculator

    def widget_context(self, uow: UnitOfWork, member_id: str) -> Optional[WidgetContext]:
        """The first viewer position member_id currently holds, if any."""
        if not member_id:
            return None
        for viewer_role, role_title in self._viewer_titles.items():
            record = self._ledger.active_record_for(
                uow, role_title, member_id=member_id,
            )
            if record is not None:
                return WidgetContext(
                    member_id=member_id,
                    viewer_role=viewer_role,
                    role_title=role_title,
                    record_id=record.record_id,
                )
        return None

    def upcoming_plan(
        self, uow: UnitOfWork, transition_date: datetime,
    ) -> Optional[TransitionPlan]:
        """Newest live plan taking effect on the transition's club day."""
        calendar = self._calculator.calendar
        day = calendar.local_date(transition_date)
        return self._store.latest_plan_effective_between(
            uow,
            calendar.midnight(day),
            calendar.midnight(day + timedelta(days=1)),
        )

    def read(
        self,
        uow: UnitOfWork,
        member_id: str,
        now: datetime,
        override: bool = False,
        lead_days: Optional[int] = None,
    ) -> WidgetData:
        """Widget data for member_id.

        Raises ForbiddenError unless the member is a sitting viewer or
        ``override`` is set.
        """
        if lead_days is not None and lead_days < 0:
            raise ValidationError("lead_days must be non-negative")
        context = self.widget_context(uow, member_id)
        if context is None and not override:
            raise ForbiddenError(
                f"Member {member_id} does not hold "
                f"{' or '.join(self._viewer_titles.values())}"
            )

        calc = self._calculator
        lead = calc.lead_days if lead_days is None else lead_days
        next_date = calc.next_transition_date(now)
        visible = calc.is_visible(now, next_date, lead)
        plan = self.upcoming_plan(uow, next_date) if visible else None
        return WidgetData(
            visible=visible,
            next_transition_date=next_date,
            days_remaining=calc.days_remaining(now, next_date),
            term_name=calc.calendar.term_name_for_transition(next_date),
            lead_days=lead,
            show_at=calc.show_at(next_date, lead),
            plan=WidgetPlanStatus.from_plan(plan) if plan is not None else None,
            context=context,
        )
