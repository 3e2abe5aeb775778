import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import feed
from auth import create_access_token
from database import COLL_POSTS, COLL_USERS, get_db, next_sequence
from main import app


class FakeProcessor:
    def __init__(self):
        self.calls = []

    def create_charge_intent(self, amount, currency="usd", methods=None):
        self.calls.append((amount, currency, methods))
        return {"clientSecret": f"pi_{amount}_secret"}


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()
    forum = mongo["forum_test"]
    database.ensure_indexes(forum)
    yield forum
    mongo.close()


@pytest.fixture
def client(db, monkeypatch):
    # mongomock has no correlated $lookup
    monkeypatch.setattr(feed, "FEED_COMMENT_JOIN", "slice")
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(email):
    return {"Authorization": f"Bearer {create_access_token({'email': email})}"}


def make_user(db, email, role=None, username=None, membership="Free"):
    user = {
        "id": next_sequence(db, COLL_USERS),
        "username": username or email.split("@")[0],
        "email": email,
        "profileImage": None,
        "badge": ["Bronze"],
        "posts": [],
        "membershipStatus": membership,
    }
    if role is not None:
        user["role"] = role
    db[COLL_USERS].insert_one(dict(user))
    return user


def make_post(db, author_id, category="Tech", tags=None, up=0, down=0):
    post = {
        "id": next_sequence(db, COLL_POSTS),
        "authorId": author_id,
        "title": "title",
        "description": "body",
        "category": category,
        "tags": tags if tags is not None else ["python"],
        "upVotes": up,
        "downVotes": down,
        "comments": [],
    }
    db[COLL_POSTS].insert_one(dict(post))
    return post


@pytest.fixture
def user(db):
    return make_user(db, "member@example.com")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role="admin")
