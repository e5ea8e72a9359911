"""Deterministic scores derived from GitHub payloads.

All functions are pure: the same payload (and ``now``) always yields the
same result.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

SECONDS_PER_YEAR = 60 * 60 * 24 * 365


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a GitHub ISO 8601 timestamp (``2020-01-01T00:00:00Z``) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_impact_score(user: dict[str, Any], now: Optional[datetime] = None) -> int:
    """Score a contributor profile from 0 to 100.

    Factors: public repositories (up to 25), followers (up to 25), account
    age (up to 20) and profile completeness (5 per filled field).
    """
    score = 0

    public_repos = user.get("public_repos")
    if public_repos:
        if public_repos > 100:
            score += 25
        elif public_repos > 50:
            score += 20
        elif public_repos > 20:
            score += 15
        elif public_repos > 5:
            score += 10
        else:
            score += 5

    followers = user.get("followers")
    if followers:
        if followers > 1000:
            score += 25
        elif followers > 500:
            score += 20
        elif followers > 100:
            score += 15
        elif followers > 10:
            score += 10
        else:
            score += 5

    created_at = parse_timestamp(user.get("created_at"))
    if created_at:
        now = now or datetime.now(timezone.utc)
        age_years = (now - created_at).total_seconds() / SECONDS_PER_YEAR
        if age_years > 10:
            score += 20
        elif age_years > 5:
            score += 15
        elif age_years > 2:
            score += 10
        elif age_years > 1:
            score += 5

    for field in ("name", "bio", "location", "company", "blog", "twitter_username"):
        if user.get(field):
            score += 5

    return min(score, 100)


def classify_contributor_role(user: dict[str, Any]) -> str:
    repos = user.get("public_repos") or 0
    followers = user.get("followers") or 0

    if repos > 100 and followers > 1000:
        return "project_lead"
    if repos > 50 and followers > 500:
        return "maintainer"
    if repos > 20 and followers > 100:
        return "regular_contributor"
    if repos > 5:
        return "occasional_contributor"
    return "first_time_contributor"


def calculate_complexity_score(pull_request: dict[str, Any], review_count: int = 0) -> int:
    """Score a pull request's complexity from 0 to 100.

    Args:
        pull_request: Raw GitHub pull request object (additions, deletions,
            changed_files, commits, comments, review_comments)
        review_count: Number of submitted reviews

    Returns:
        Sum of size, file count, commit count, discussion and review
        factors, capped at 100
    """
    score = 0

    lines_changed = (pull_request.get("additions") or 0) + (pull_request.get("deletions") or 0)
    if lines_changed > 1000:
        score += 30
    elif lines_changed > 500:
        score += 25
    elif lines_changed > 200:
        score += 15
    elif lines_changed > 50:
        score += 10
    else:
        score += 5

    changed_files = pull_request.get("changed_files") or 0
    if changed_files > 20:
        score += 25
    elif changed_files > 10:
        score += 15
    elif changed_files > 5:
        score += 10
    else:
        score += 5

    commits = pull_request.get("commits") or 0
    if commits > 20:
        score += 15
    elif commits > 10:
        score += 10
    elif commits > 5:
        score += 5
    else:
        score += 2

    total_comments = (pull_request.get("comments") or 0) + (pull_request.get("review_comments") or 0)
    if total_comments > 20:
        score += 15
    elif total_comments > 10:
        score += 10
    elif total_comments > 5:
        score += 5

    if review_count > 5:
        score += 15
    elif review_count > 2:
        score += 10
    elif review_count > 0:
        score += 5

    return min(score, 100)


def _hours_between(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 3600, 1)


def calculate_cycle_time(pull_request: dict[str, Any]) -> Optional[float]:
    """Hours from creation to merge, rounded to one decimal. None if unmerged."""
    merged_at = parse_timestamp(pull_request.get("merged_at"))
    created_at = parse_timestamp(pull_request.get("created_at"))
    if merged_at is None or created_at is None:
        return None
    return _hours_between(created_at, merged_at)


def calculate_review_time(pull_request: dict[str, Any]) -> Optional[float]:
    """Hours from the last update before merge to the merge itself.

    ``updated_at`` stands in for the start of review; when it equals
    ``created_at`` there was no review period and the result is 0.
    """
    merged_at = parse_timestamp(pull_request.get("merged_at"))
    if merged_at is None:
        return None

    review_start = parse_timestamp(pull_request.get("updated_at"))
    created_at = parse_timestamp(pull_request.get("created_at"))
    if review_start is None or review_start == created_at:
        return 0.0
    return _hours_between(review_start, merged_at)


def top_languages(repositories: list[dict[str, Any]], limit: int = 5) -> list[str]:
    """Most frequent primary languages across repositories, ties broken by name."""
    counts: dict[str, int] = {}
    for repo in repositories:
        language = repo.get("language")
        if language and not repo.get("fork"):
            counts[language] = counts.get(language, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [language for language, _ in ranked[:limit]]
