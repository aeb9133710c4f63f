"""Static search profile definitions."""

from __future__ import annotations

from typing import List, Optional

from .models import SearchProfile

SITE_URL = "https://xn--80aae5aibotfo5h.xn--p1ai/kvartiry/"

SEARCH_PROFILES: List[SearchProfile] = [
    SearchProfile(
        id="family-mortgage-1room",
        name="Семейная ипотека 1-комн (28-34м², этаж 4-17, 8-12 млн)",
        url=(
            SITE_URL
            + "?property=%D1%81%D0%B5%D0%BC%D0%B5%D0%B9%D0%BD%D0%B0%D1%8F"
            "&floor[]=4;17&area[]=28;34&price[]=8;12"
            "&price_m[]=330.5;380.5&district=2594"
        ),
        enabled=True,
        notify_on_new=True,
        notify_on_available=True,
        notify_on_price_change=False,
    ),
    # Known to have unbooked units; useful for checking the pipeline end to end.
    SearchProfile(
        id="test-with-available",
        name="ТЕСТ - страница с незабронированными",
        url=(
            SITE_URL
            + "?property=%D1%81%D0%B5%D0%BC%D0%B5%D0%B9%D0%BD%D0%B0%D1%8F"
            "&auction=N&booked=B&area[]=30;136&price[]=7;40"
            "&price_m[]=171.3;604.2&view=map"
        ),
        enabled=False,
        notify_on_new=True,
        notify_on_available=True,
        notify_on_price_change=False,
    ),
]


def get_enabled_profiles(
    profiles: Optional[List[SearchProfile]] = None,
) -> List[SearchProfile]:
    return [profile for profile in _resolve(profiles) if profile.enabled]


def get_profile_by_id(
    profile_id: str,
    profiles: Optional[List[SearchProfile]] = None,
) -> Optional[SearchProfile]:
    for profile in _resolve(profiles):
        if profile.id == profile_id:
            return profile
    return None


def _resolve(profiles: Optional[List[SearchProfile]]) -> List[SearchProfile]:
    return SEARCH_PROFILES if profiles is None else profiles
