"""
Budget Planner: bounds how much post text is forwarded to the summarizer.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from adapter.models import Post
from analytics import isoformat_z, sort_recent_first


class TokenBudget(BaseModel):
    """Token budget model for one summarizer call."""
    model_max_tokens: int = Field(default=8192, description="Model context size in tokens")
    reserved_response_tokens: int = Field(default=600, description="Tokens kept back for the completion")
    chars_per_token: float = Field(default=4, description="Approximate characters per token")
    max_posts: int = Field(default=150, description="Cap on posts forwarded")
    max_chars: Optional[int] = Field(default=12000, description="Hard cap on joined characters")

    @property
    def available_chars(self) -> int:
        return max(0, int((self.model_max_tokens - self.reserved_response_tokens) * self.chars_per_token))

    @property
    def char_limit(self) -> int:
        if self.max_chars is None:
            return self.available_chars
        return min(self.available_chars, self.max_chars)


class BudgetPlan(BaseModel):
    text: str
    posts_kept: int
    chars_kept: int
    truncated: bool = False


def format_post_line(post: Post) -> str:
    """One prompt line per post: `[ISO] @handle: text`, with the text's whitespace runs collapsed."""
    text = " ".join(post.text.split())
    return f"[{isoformat_z(post.created_at)}] @{post.author.handle}: {text}"


def build_post_lines(posts: Sequence[Post], max_posts: int) -> List[str]:
    """Most recent first, capped to max_posts."""
    return [format_post_line(post) for post in sort_recent_first(posts)[:max(max_posts, 0)]]


def plan_budget(lines: Sequence[str], budget: TokenBudget) -> BudgetPlan:
    """
    Join post lines (already ordered most recent first) and hard-cut the
    result at the budget's character limit. The cut is not word aware.
    """
    lines = list(lines)[:max(budget.max_posts, 0)]
    joined = "\n".join(lines)
    limit = budget.char_limit

    truncated = len(joined) > limit
    if truncated:
        joined = joined[:limit]

    # A line counts as kept when at least its first character survived the cut
    posts_kept, offset = 0, 0
    for line in lines:
        if offset >= len(joined):
            break
        posts_kept += 1
        offset += len(line) + 1

    return BudgetPlan(text=joined, posts_kept=posts_kept, chars_kept=len(joined), truncated=truncated)


__all__ = ["TokenBudget", "BudgetPlan", "format_post_line", "build_post_lines", "plan_budget"]
