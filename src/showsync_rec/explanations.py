"""Reason code -> explanation text lookup."""
from typing import Callable

from .models import RecommendationReason


def _genre_match(ctx: dict) -> str:
    genre = ctx.get('genre')
    return f"Based on your love for {genre}" if genre else "Matches the genres you enjoy"


def _similar_content(ctx: dict) -> str:
    return f"Because you enjoyed {ctx.get('seed_title', 'something similar')}"


def _similar_users(ctx: dict) -> str:
    peers = ctx.get('peer_count', 0)
    if peers > 1:
        return f"{peers} users with similar taste loved this"
    return "Users with similar taste loved this"


def _trending(ctx: dict) -> str:
    viewers = ctx.get('recent_viewers')
    if viewers:
        return f"Trending now - {viewers} people watched this recently"
    return "Trending now"


def _highly_rated(ctx: dict) -> str:
    rating = ctx.get('average_rating')
    if rating is not None:
        return f"Highly rated by the community ({rating:.1f}/10)"
    return "Highly rated by the community"


def _group_compatibility(ctx: dict) -> str:
    members = ctx.get('matching_members', 0)
    genres = ctx.get('shared_genres') or []
    if genres:
        return f"{members} members share your taste in {', '.join(genres[:2])}"
    return f"{members} members share your viewing taste"


EXPLANATION_TEMPLATES: dict[RecommendationReason, Callable[[dict], str]] = {
    RecommendationReason.GENRE_MATCH: _genre_match,
    RecommendationReason.SIMILAR_CONTENT: _similar_content,
    RecommendationReason.SIMILAR_USERS: _similar_users,
    RecommendationReason.TRENDING_GLOBAL: _trending,
    RecommendationReason.HIGHLY_RATED: _highly_rated,
    RecommendationReason.GENRE_COMPATIBILITY: _group_compatibility,
    RecommendationReason.GENERAL: lambda ctx: "Recommended for you",
}


def explain(reason: RecommendationReason, **context) -> str:
    template = EXPLANATION_TEMPLATES.get(reason, EXPLANATION_TEMPLATES[RecommendationReason.GENERAL])
    return template(context)
