"""Contributor enrichment: profile, impact score and role classification.

Lookups go through the numeric GitHub user id only. Usernames can be
renamed or reused, so they are never used to find a profile.
"""

import logging
from typing import Any, Optional

from enrichers.base import EntityEnricher
from enrichers.scoring import calculate_impact_score, classify_contributor_role, top_languages
from fetchers.exceptions import NotFoundError, PermanentError, TransientError
from models.data_models import Contributor, EntityType

logger = logging.getLogger(__name__)


def map_contributor(
    user: dict[str, Any],
    contributor_id: Optional[str] = None,
    languages: Optional[list[str]] = None,
) -> Contributor:
    """Map a GitHub user object onto the contributors table."""
    return Contributor(
        id=contributor_id,
        github_id=user["id"],
        username=user.get("login"),
        name=user.get("name"),
        avatar=user.get("avatar_url"),
        bio=user.get("bio"),
        company=user.get("company"),
        blog=user.get("blog") or None,
        twitter_username=user.get("twitter_username"),
        location=user.get("location"),
        followers=user.get("followers"),
        repositories=user.get("public_repos"),
        impact_score=calculate_impact_score(user),
        role_classification=classify_contributor_role(user),
        top_languages=languages,
        is_enriched=True,
    )


class ContributorEnricher(EntityEnricher):
    entity_type = EntityType.CONTRIBUTORS

    def describe(self, row: dict[str, Any]) -> str:
        return row.get("username") or f"github_id={row.get('github_id')}"

    def enrich_row(self, row: dict[str, Any], attempt: int) -> None:
        github_id = row.get("github_id")
        if not github_id:
            raise PermanentError(f"Missing github_id for contributor {row.get('id')}")

        user = self.fetcher.get_user_by_id(github_id)

        languages = None
        if self.settings.fetch_contributor_languages and user.get("login"):
            languages = self._fetch_languages(user["login"])

        record = map_contributor(user, contributor_id=row.get("id"), languages=languages)
        self.store.upsert(self.table, record.to_record(), on_conflict="github_id")

    def _fetch_languages(self, username: str) -> Optional[list[str]]:
        """Top languages from public repositories; a failure leaves them unset."""
        try:
            repos = self.fetcher.get_user_repositories(username)
        except (NotFoundError, TransientError, PermanentError) as e:
            logger.warning(f"Could not fetch repositories for {username}: {e}")
            self.report_error("languages", e)
            return None
        return top_languages(repos)
