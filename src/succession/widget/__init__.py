"""Transition countdown widget for the sitting President and Past President."""

from succession.widget.calculator import (
    TransitionWidget,
    TransitionWidgetCalculator,
    WidgetContext,
    WidgetData,
    WidgetPlanStatus,
)
from succession.widget.calendar import TermBoundaries, TermCalendar

__all__ = [
    "TransitionWidget",
    "TransitionWidgetCalculator",
    "WidgetContext",
    "WidgetData",
    "WidgetPlanStatus",
    "TermBoundaries",
    "TermCalendar",
]
