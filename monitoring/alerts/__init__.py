"""
Alerts Package.

Problem-to-alert transformation and notification rule matching.
"""

from .transformer import (
    RawProblem,
    filter_actionable,
    transform_problem,
)
from .rules import (
    GroupEvaluation,
    NotificationRuleMatcher,
    can_send_notification,
    evaluate_group,
    group_matches_alert,
)


__all__ = [
    "RawProblem",
    "filter_actionable",
    "transform_problem",
    "GroupEvaluation",
    "NotificationRuleMatcher",
    "can_send_notification",
    "evaluate_group",
    "group_matches_alert",
]
