"""
Aggregation pipelines for the merged post feed.

Every feed shape shares the same join: the author document is attached as
``author`` (posts whose author is missing are dropped) and the first N of the
post's comments are attached as ``commentData``. ``resolve_mode`` picks exactly
one response shape per request from the query parameters, in priority order.
"""
import os
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from database import COLL_COMMENTS, COLL_USERS

FEED_PAGE_SIZE = int(os.getenv("FEED_PAGE_SIZE", "5"))
FEED_COMMENT_LIMIT = int(os.getenv("FEED_COMMENT_LIMIT", "3"))
FEED_FILTER_MODE = os.getenv("FEED_FILTER_MODE", "any")
FEED_COMMENT_JOIN = os.getenv("FEED_COMMENT_JOIN", "lookup")

POPULARITY_FILTERS = {
    "Popularity": ["$upVotes", "$downVotes"],
    "Disliked": ["$downVotes", "$upVotes"],
}


class FeedMode(str, Enum):
    PAGED = "paged"
    FILTERED = "filtered"
    LATEST = "latest"
    ALL = "all"
    DEFAULT = "default"


class FeedQuery(BaseModel):
    page: Optional[int] = None
    filter: Optional[str] = None
    category: Optional[str] = None
    latest: Optional[str] = None
    allData: Optional[str] = None
    loadComment: Optional[int] = None

    @property
    def search_text(self) -> Optional[str]:
        return self.filter if self.filter is not None else self.category


def resolve_mode(query: FeedQuery) -> FeedMode:
    if query.page is not None:
        return FeedMode.PAGED
    if query.filter is not None or query.category is not None:
        return FeedMode.FILTERED
    if query.latest is not None:
        return FeedMode.LATEST
    if query.allData is not None or query.loadComment is not None:
        return FeedMode.ALL
    return FeedMode.DEFAULT


def comment_limit(load_more: Optional[int] = None, base: int = FEED_COMMENT_LIMIT) -> int:
    return max(base + max(load_more or 0, 0), 0)


def comment_stages(limit: int, strategy: Optional[str] = None) -> List[dict]:
    """Attach at most ``limit`` comments per post as ``commentData``.

    ``lookup`` bounds the join inside the store. ``slice`` joins every comment
    and trims afterwards, for stores without correlated $lookup support.
    """
    if (strategy or FEED_COMMENT_JOIN) == "slice":
        return [
            {
                "$lookup": {
                    "from": COLL_COMMENTS,
                    "localField": "id",
                    "foreignField": "postId",
                    "as": "commentData",
                }
            },
            {"$addFields": {"commentData": {"$slice": ["$commentData", limit]}}},
        ]
    return [
        {
            "$lookup": {
                "from": COLL_COMMENTS,
                "let": {"pid": "$id"},
                "pipeline": [
                    {"$match": {"$expr": {"$eq": ["$postId", "$$pid"]}}},
                    {"$limit": limit},
                ],
                "as": "commentData",
            }
        },
    ]


def join_stages(limit: int) -> List[dict]:
    return [
        {
            "$lookup": {
                "from": COLL_USERS,
                "localField": "authorId",
                "foreignField": "id",
                "as": "author",
            }
        },
        {"$unwind": "$author"},
    ] + comment_stages(limit)


def filter_stage(text: str, mode: str = FEED_FILTER_MODE) -> dict:
    pattern = {"$regex": re.escape(text), "$options": "i"}
    clauses = [{"tags": pattern}, {"category": pattern}]
    if mode == "all":
        return {"$match": {"$and": clauses}}
    return {"$match": {"$or": clauses}}


def build_pipeline(mode: FeedMode, query: FeedQuery, page_size: int = FEED_PAGE_SIZE) -> List[dict]:
    pipeline = join_stages(comment_limit(query.loadComment))
    if mode is FeedMode.PAGED:
        page = max(query.page, 1)
        pipeline += [
            {"$match": {}},
            {"$skip": (page - 1) * page_size},
            {"$limit": page_size},
        ]
    elif mode is FeedMode.FILTERED:
        pipeline.append(filter_stage(query.search_text))
    elif mode is FeedMode.DEFAULT:
        pipeline.append({"$limit": page_size})
    return pipeline


def popularity_pipeline(filter_name: str, load_more: Optional[int] = None) -> List[dict]:
    """Posts sorted by vote balance, most favoured first. Raises KeyError for unknown filters."""
    operands = POPULARITY_FILTERS[filter_name]
    return [
        {"$addFields": {"totalVotes": {"$subtract": operands}}},
        {"$sort": {"totalVotes": -1}},
    ] + join_stages(comment_limit(load_more))


def clean_joined(doc: dict) -> dict:
    """Strip ObjectIds from a joined feed document and its embedded documents."""
    d = {k: v for k, v in doc.items() if k != "_id"}
    if isinstance(d.get("author"), dict):
        d["author"] = {k: v for k, v in d["author"].items() if k != "_id"}
    if isinstance(d.get("commentData"), list):
        d["commentData"] = [{k: v for k, v in c.items() if k != "_id"} for c in d["commentData"]]
    return d
