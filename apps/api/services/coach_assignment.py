"""
Coach Assignment

Picks the primary coach for a new subscription.

Order of precedence:
1. Team plans go to the platform admin account.
2. An explicit coach preference is honoured when that coach is active and
   has capacity for the service.
3. Otherwise coaches are scored on focus-area overlap and current load:
       score = 10 * matches - load
   ties broken by lower load, then least recently assigned (never-assigned first).

Capacity comes from coach_service_limits. A coach with no limit row for the
service is not a candidate. When nobody qualifies the subscription is created
without a coach and flagged for manual assignment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.logging import step_fields
from models import Coach, CoachServiceLimit, Service, Subscription, User

logger = logging.getLogger(__name__)

FN = "assign-coach"

MATCH_WEIGHT = 10
LOAD_STATUSES = ("pending", "active")
ELIGIBLE_COACH_STATUSES = ("active", "approved")

METHOD_TEAM = "team"
METHOD_PREFERENCE = "preference"
METHOD_AUTO = "auto"
METHOD_MANUAL = "manual"


@dataclass
class CoachCandidate:
    coach_id: UUID
    user_id: UUID
    load: int
    max_clients: int
    matches: int
    last_assigned_at: Optional[datetime] = None

    @property
    def score(self) -> int:
        return MATCH_WEIGHT * self.matches - self.load


@dataclass
class AssignmentResult:
    coach_user_id: Optional[UUID]
    coach_id: Optional[UUID]
    method: Optional[str]
    needs_manual_assignment: bool = False
    candidates: List[CoachCandidate] = field(default_factory=list)


def _normalize(values: Optional[Iterable[str]]) -> List[str]:
    return [str(v).strip().lower() for v in (values or []) if v is not None and str(v).strip()]


def focus_area_match_count(specializations: Optional[Iterable[str]], focus_areas: Optional[Iterable[str]]) -> int:
    """Count focus areas that exactly match one of the coach's specializations (case-insensitive)."""
    tags = set(_normalize(specializations))
    if not tags:
        return 0
    return sum(1 for area in _normalize(focus_areas) if area in tags)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rank_key(candidate: CoachCandidate):
    last = _as_utc(candidate.last_assigned_at)
    # Never-assigned coaches sort before any timestamp
    return (-candidate.score, candidate.load, last is not None, last or datetime.min.replace(tzinfo=timezone.utc))


def rank_candidates(candidates: Iterable[CoachCandidate]) -> List[CoachCandidate]:
    return sorted(candidates, key=_rank_key)


def current_load(db: Session, coach_user_id: UUID, service_id: UUID) -> int:
    return (
        db.query(func.count(Subscription.id))
        .filter(
            Subscription.coach_id == coach_user_id,
            Subscription.service_id == service_id,
            Subscription.status.in_(LOAD_STATUSES),
        )
        .scalar()
        or 0
    )


def check_coach_capacity(db: Session, coach: Coach, service_id: UUID) -> bool:
    limit = (
        db.query(CoachServiceLimit)
        .filter(CoachServiceLimit.coach_id == coach.id, CoachServiceLimit.service_id == service_id)
        .first()
    )
    if limit is None:
        return False
    return current_load(db, coach.user_id, service_id) < limit.max_clients


def _platform_admin(db: Session) -> Optional[User]:
    return db.query(User).filter(User.role == "admin").order_by(User.created_at, User.id).first()


def _preferred_coach(db: Session, requested_coach_id: UUID, service_id: UUID) -> Optional[Coach]:
    # Accepts either the coach profile id or the coach's user id
    coach = (
        db.query(Coach)
        .filter((Coach.id == requested_coach_id) | (Coach.user_id == requested_coach_id))
        .first()
    )
    if coach is None or coach.status != "active":
        return None
    if not check_coach_capacity(db, coach, service_id):
        return None
    return coach


def collect_candidates(db: Session, service_id: UUID, focus_areas: Optional[Iterable[str]]) -> List[CoachCandidate]:
    rows = (
        db.query(CoachServiceLimit, Coach)
        .join(Coach, Coach.id == CoachServiceLimit.coach_id)
        .filter(
            CoachServiceLimit.service_id == service_id,
            Coach.status.in_(ELIGIBLE_COACH_STATUSES),
        )
        .all()
    )
    focus = list(focus_areas or [])
    candidates: List[CoachCandidate] = []
    for limit, coach in rows:
        load = current_load(db, coach.user_id, service_id)
        if load >= limit.max_clients:
            continue
        candidates.append(
            CoachCandidate(
                coach_id=coach.id,
                user_id=coach.user_id,
                load=load,
                max_clients=limit.max_clients,
                matches=focus_area_match_count(coach.specializations, focus),
                last_assigned_at=coach.last_assigned_at,
            )
        )
    return candidates


def assign_coach(
    db: Session,
    service: Service,
    focus_areas: Optional[Iterable[str]] = None,
    requested_coach_id: Optional[UUID] = None,
    preference_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AssignmentResult:
    """
    Choose a coach for a new subscription to `service`.

    The chosen coach's last_assigned_at is stamped on the session; the caller
    commits together with the subscription it creates.
    """
    now = now or datetime.now(timezone.utc)

    if service.service_type == "team":
        admin = _platform_admin(db)
        if admin is not None:
            admin_coach = db.query(Coach).filter(Coach.user_id == admin.id).first()
            logger.info(
                "Team plan assigned to platform admin",
                extra=step_fields(FN, "team_assignment", ok=True, coach_user_id=str(admin.id)),
            )
            return AssignmentResult(
                coach_user_id=admin.id,
                coach_id=admin_coach.id if admin_coach else None,
                method=METHOD_TEAM,
            )
        logger.warning(
            "No admin account for team plan, falling back to automatic assignment",
            extra=step_fields(FN, "team_assignment", ok=False, service_id=str(service.id)),
        )

    if requested_coach_id and preference_type != "auto":
        coach = _preferred_coach(db, requested_coach_id, service.id)
        if coach is not None:
            coach.last_assigned_at = now
            logger.info(
                "Preferred coach assigned",
                extra=step_fields(FN, "preference", ok=True, coach_id=str(coach.id)),
            )
            return AssignmentResult(coach_user_id=coach.user_id, coach_id=coach.id, method=METHOD_PREFERENCE)
        logger.info(
            "Preferred coach unavailable, using automatic assignment",
            extra=step_fields(FN, "preference", ok=False, requested_coach_id=str(requested_coach_id)),
        )

    candidates = rank_candidates(collect_candidates(db, service.id, focus_areas))
    if not candidates:
        logger.warning(
            f"[NEEDS_MANUAL_ASSIGNMENT] No coach with capacity for service {service.id}",
            extra=step_fields(FN, "no_candidate", ok=False, service_id=str(service.id)),
        )
        return AssignmentResult(coach_user_id=None, coach_id=None, method=None, needs_manual_assignment=True)

    chosen = candidates[0]
    coach = db.query(Coach).filter(Coach.id == chosen.coach_id).first()
    coach.last_assigned_at = now
    logger.info(
        "Coach auto-assigned",
        extra=step_fields(
            FN, "auto", ok=True,
            coach_id=str(chosen.coach_id), score=chosen.score, load=chosen.load,
            matches=chosen.matches, candidates=len(candidates),
        ),
    )
    return AssignmentResult(
        coach_user_id=chosen.user_id,
        coach_id=chosen.coach_id,
        method=METHOD_AUTO,
        candidates=candidates,
    )


def assign_manually(db: Session, subscription: Subscription, coach: Coach) -> Subscription:
    """Admin override: set the coach and clear the manual-assignment flag. Caller commits."""
    subscription.coach_id = coach.user_id
    subscription.coach_assignment_method = METHOD_MANUAL
    subscription.needs_coach_assignment = False
    coach.last_assigned_at = datetime.now(timezone.utc)
    logger.info(
        "Coach assigned manually",
        extra=step_fields(FN, "manual", ok=True, subscription_id=str(subscription.id), coach_id=str(coach.id)),
    )
    return subscription
