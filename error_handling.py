import math
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from loguru import logger

from constants import DAYS_PER_YEAR, FAR_FUTURE_YEARS
from milestones import DetectionError, Milestone, MilestoneDetectionResult

T = TypeVar("T")
F = TypeVar("F")


def safe_milestone_detection(
    operation: Callable[[], T], context: str, fallback: T
) -> Tuple[T, List[DetectionError]]:
    """Runs ``operation``, returning ``fallback`` plus an error record if it raises."""
    try:
        return operation(), []
    except Exception as e:
        logger.error(f"Milestone detection error in {context}: {e}")
        error = DetectionError(
            code="MILESTONE_OPERATION_FAILED",
            message=f"Failed to {context}: {e}",
            severity="error",
            context={
                "operation": context,
                "error": repr(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        return fallback, [error]


def with_graceful_degradation(
    primary: Callable[[], T], fallback: Callable[[], F], context: str
) -> Union[T, F]:
    try:
        return primary()
    except Exception as e:
        logger.warning(f"Primary operation failed in {context}, using fallback: {e}")
        return fallback()


def validate_milestones(
    milestones: Sequence[Milestone], reference_date: Optional[date] = None
) -> List[DetectionError]:
    """
    Integrity checks on detected milestones. Problems are reported, never
    raised; a milestone more than 50 years past ``reference_date`` (today by
    default) usually points at a calculation error.
    """
    today = reference_date or date.today()
    errors: List[DetectionError] = []

    for milestone in milestones:
        if not milestone.id:
            errors.append(
                DetectionError(
                    code="INVALID_MILESTONE_ID",
                    message="Milestone missing required ID field",
                    severity="error",
                    context={"milestone": milestone.title or "Unknown"},
                )
            )

        if not milestone.title or not milestone.title.strip():
            errors.append(
                DetectionError(
                    code="INVALID_MILESTONE_TITLE",
                    message="Milestone missing title",
                    severity="warning",
                    context={"milestoneId": milestone.id},
                )
            )

        years_ahead = (milestone.date - today).days / DAYS_PER_YEAR
        if years_ahead > FAR_FUTURE_YEARS:
            errors.append(
                DetectionError(
                    code="MILESTONE_FAR_FUTURE",
                    message=f"Milestone date is unusually far in the future: {milestone.title}",
                    severity="warning",
                    context={
                        "milestoneId": milestone.id,
                        "date": milestone.date.isoformat(),
                        "yearsInFuture": round(years_ahead, 1),
                    },
                )
            )

    return errors


def sanitize_milestone_for_display(milestone: Milestone) -> Milestone:
    impact = milestone.financial_impact
    if impact is not None and not math.isfinite(impact):
        impact = None
    return milestone.model_copy(
        update={
            "title": milestone.title.strip() or "Untitled Milestone",
            "description": milestone.description.strip() or "No description available",
            "financial_impact": impact,
        }
    )


def create_empty_milestone_result(
    errors: Optional[List[DetectionError]] = None,
) -> MilestoneDetectionResult:
    return MilestoneDetectionResult(milestones=[], errors=errors or [], warnings=[])
