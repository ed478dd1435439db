"""
Goal Alignment Engine.

Goals are motivation drivers held with strength > 0.6. A goal held by at
least 60% of members is shared; a goal held by a single member is
divergent; every goal held by more than one member forms a cluster.
"""

import structlog

from cohortlens.engines.strengths import required_members
from cohortlens.schemas.analysis import AlignmentCluster, GoalAlignment
from cohortlens.schemas.profile import MemberProfile

logger = structlog.get_logger(__name__)

GOAL_STRENGTH_THRESHOLD = 0.6
SHARED_GOAL_PREVALENCE = 0.6


class GoalAlignmentEngine:
    algorithm = "goal_alignment_v1"

    def calculate(self, profiles: list[MemberProfile]) -> GoalAlignment:
        holders: dict[str, list[str]] = {}
        for member in profiles:
            for driver in member.motivation_drivers:
                if driver.strength > GOAL_STRENGTH_THRESHOLD:
                    members = holders.setdefault(driver.driver, [])
                    if member.member_id not in members:
                        members.append(member.member_id)

        n = len(profiles)
        required = required_members(n, SHARED_GOAL_PREVALENCE) if n else 1
        shared = [goal for goal, members in holders.items() if len(members) >= required]
        divergent = [goal for goal, members in holders.items() if len(members) == 1]
        clusters = [
            AlignmentCluster(members=members, goals=[goal], strength=len(members) / n)
            for goal, members in holders.items()
            if len(members) > 1
        ]

        overall = len(shared) / max(len(holders), 1)
        logger.debug(
            "goal_alignment_computed",
            goals=len(holders),
            shared=len(shared),
            divergent=len(divergent),
        )
        return GoalAlignment(
            overall_alignment=overall,
            shared_goals=shared,
            divergent_goals=divergent,
            alignment_clusters=clusters,
        )
