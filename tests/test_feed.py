import pytest

from database import COLL_COMMENTS
from feed import (
    FeedMode,
    FeedQuery,
    build_pipeline,
    comment_limit,
    comment_stages,
    filter_stage,
    popularity_pipeline,
    resolve_mode,
)
from conftest import make_post, make_user


@pytest.mark.parametrize(
    "params, mode",
    [
        ({"page": 2}, FeedMode.PAGED),
        ({"page": 1, "filter": "tech", "latest": "1"}, FeedMode.PAGED),
        ({"filter": "tech", "latest": "1"}, FeedMode.FILTERED),
        ({"category": "tech"}, FeedMode.FILTERED),
        ({"latest": "1", "allData": "1"}, FeedMode.LATEST),
        ({"allData": "1"}, FeedMode.ALL),
        ({"loadComment": 3}, FeedMode.ALL),
        ({}, FeedMode.DEFAULT),
    ],
)
def test_resolve_mode_priority(params, mode):
    assert resolve_mode(FeedQuery(**params)) is mode


def test_comment_limit_adds_increment_to_base():
    assert comment_limit() == 3
    assert comment_limit(2) == 5
    assert comment_limit(-4) == 3


def test_filter_stage_modes():
    any_stage = filter_stage("c++", mode="any")
    assert list(any_stage["$match"]) == ["$or"]
    assert any_stage["$match"]["$or"][0]["tags"]["$regex"] == r"c\+\+"
    assert list(filter_stage("c++", mode="all")["$match"]) == ["$and"]


def test_paged_pipeline_skips_previous_pages():
    pipeline = build_pipeline(FeedMode.PAGED, FeedQuery(page=3), page_size=5)
    assert pipeline[-2:] == [{"$skip": 10}, {"$limit": 5}]


def test_comment_join_is_bounded_inside_the_lookup():
    (lookup,) = comment_stages(4, strategy="lookup")
    join = lookup["$lookup"]
    assert join["from"] == COLL_COMMENTS
    assert join["let"] == {"pid": "$id"}
    assert join["pipeline"] == [
        {"$match": {"$expr": {"$eq": ["$postId", "$$pid"]}}},
        {"$limit": 4},
    ]
    assert join["as"] == "commentData"


def test_comment_join_slice_fallback():
    lookup, trim = comment_stages(4, strategy="slice")
    assert lookup["$lookup"]["foreignField"] == "postId"
    assert trim == {"$addFields": {"commentData": {"$slice": ["$commentData", 4]}}}


def test_loaded_comments_widen_the_join_limit():
    pipeline = build_pipeline(FeedMode.ALL, FeedQuery(loadComment=2))
    joins = [s["$lookup"] for s in pipeline if "$lookup" in s and "pipeline" in s["$lookup"]]
    assert joins and joins[0]["pipeline"][-1] == {"$limit": 5}


def test_popularity_pipeline_rejects_unknown_filter():
    with pytest.raises(KeyError):
        popularity_pipeline("Newest")


@pytest.fixture
def feed(db):
    author = make_user(db, "writer@example.com")
    posts = [make_post(db, author["id"]) for _ in range(5)]
    posts += [make_post(db, author["id"], category="Sports", tags=["football"]) for _ in range(2)]
    for i in range(6):
        db[COLL_COMMENTS].insert_one({"id": i + 1, "postId": posts[0]["id"], "comment": f"c{i}"})
    return posts


def ids(resp):
    return [p["id"] for p in resp.json()]


def test_default_feed_caps_at_five(client, feed):
    resp = client.get("/mergedAllData")
    assert resp.status_code == 200
    assert ids(resp) == [1, 2, 3, 4, 5]


def test_feed_joins_author_and_bounded_comments(client, feed):
    first = client.get("/mergedAllData").json()[0]
    assert first["author"]["email"] == "writer@example.com"
    assert "_id" not in first["author"]
    assert [c["comment"] for c in first["commentData"]] == ["c0", "c1", "c2"]


def test_load_more_comments_returns_all_posts(client, feed):
    resp = client.get("/mergedAllData", params={"loadComment": 2})
    assert len(resp.json()) == 7
    assert len(resp.json()[0]["commentData"]) == 5


def test_paged_feed(client, feed):
    assert ids(client.get("/mergedAllData", params={"page": 2})) == [6, 7]


def test_latest_returns_every_joined_post(client, db, feed):
    make_post(db, author_id=999)
    assert ids(client.get("/mergedAllData", params={"latest": "1"})) == [1, 2, 3, 4, 5, 6, 7]


def test_filter_matches_category_or_tags_case_insensitively(client, feed):
    assert ids(client.get("/mergedAllData", params={"filter": "SPORT"})) == [6, 7]
    assert ids(client.get("/mergedAllData", params={"category": "foot"})) == [6, 7]
    assert ids(client.get("/mergedAllData", params={"filter": "nothing"})) == []


def test_popularity_sort(client, db):
    author = make_user(db, "writer@example.com")
    make_post(db, author["id"], up=1, down=4)
    make_post(db, author["id"], up=9, down=0)
    make_post(db, author["id"], up=3, down=3)

    popular = client.post("/posts/popularity", params={"filter": "Popularity"}).json()
    assert [p["id"] for p in popular] == [2, 3, 1]
    assert [p["totalVotes"] for p in popular] == [9, 0, -3]

    disliked = client.post("/posts/popularity", params={"filter": "Disliked"}).json()
    assert [p["id"] for p in disliked] == [1, 3, 2]


def test_popularity_unknown_filter_is_bad_request(client):
    resp = client.post("/posts/popularity", params={"filter": "Newest"})
    assert resp.status_code == 400
