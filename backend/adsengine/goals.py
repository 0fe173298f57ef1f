"""
Goal Catalog — static registry of marketing goals the engine can run.
Each goal names the conversion event ("core signal") used to score ad-sets
and the kind of link its ads send people to.
"""

from typing import Mapping, NamedTuple, Optional


class Goal(NamedTuple):
    key: str
    title: str
    core_signal: str
    asset_requirements: str
    # Which of the user's links the ads point at, see DESTINATION_SOURCES
    destination_kind: str
    # Meta campaign objective used when creating campaigns for this goal
    objective: str
    # Meta optimization goal used for ad-sets
    optimization_goal: str


GOALS: dict[str, Goal] = {
    g.key: g
    for g in (
        Goal(
            key="streams",
            title="Streams & Smart Link Clicks",
            core_signal="smartlinkclicked",
            asset_requirements="Smart link plus 1-5 vertical images or short videos",
            destination_kind="smart_link",
            objective="OUTCOME_TRAFFIC",
            optimization_goal="LINK_CLICKS",
        ),
        Goal(
            key="presave",
            title="Pre-Save Conversions",
            core_signal="presavecomplete",
            asset_requirements="Pre-save link plus release artwork or teaser video",
            destination_kind="presave_link",
            objective="OUTCOME_LEADS",
            optimization_goal="OFFSITE_CONVERSIONS",
        ),
        Goal(
            key="virality",
            title="Virality + Engagement",
            core_signal="thruplay",
            asset_requirements="Short-form videos (9:16), 6-30 seconds",
            destination_kind="smart_link",
            objective="OUTCOME_ENGAGEMENT",
            optimization_goal="THRUPLAY",
        ),
        Goal(
            key="followers",
            title="Follower Growth",
            core_signal="profile_view",
            asset_requirements="Instagram or Facebook profile plus profile-style creatives",
            destination_kind="profile",
            objective="OUTCOME_AWARENESS",
            optimization_goal="PROFILE_VISIT",
        ),
        Goal(
            key="build_audience",
            title="Email Capture",
            core_signal="lead",
            asset_requirements="Lead capture link plus an offer image or video",
            destination_kind="smart_link",
            objective="OUTCOME_LEADS",
            optimization_goal="LEAD_GENERATION",
        ),
        Goal(
            key="fan_segmentation",
            title="One-Click Fan Segmentation",
            core_signal="onclicklink",
            asset_requirements="One-click link plus platform-specific creatives",
            destination_kind="one_click_link",
            objective="OUTCOME_TRAFFIC",
            optimization_goal="LINK_CLICKS",
        ),
    )
}

# UserAdsSettings link columns tried in order; the smart link is the common fallback
DESTINATION_SOURCES: dict[str, tuple[str, ...]] = {
    "smart_link": ("smart_link_url",),
    "presave_link": ("presave_link_url", "smart_link_url"),
    "profile": ("instagram_profile_url", "facebook_page_url", "smart_link_url"),
    "one_click_link": ("one_click_link_url", "smart_link_url"),
}


def get_goal(goal_key: str) -> Optional[Goal]:
    return GOALS.get(goal_key)


def resolve_destination(goal: Goal, links: Mapping[str, Optional[str]]) -> Optional[str]:
    """First configured link for the goal's destination kind, or None."""
    for source in DESTINATION_SOURCES.get(goal.destination_kind, ("smart_link_url",)):
        url = (links.get(source) or "").strip()
        if url:
            return url
    return None
