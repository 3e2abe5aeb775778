import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from auth import (
    clear_token_cookie,
    create_access_token,
    is_admin,
    require_admin,
    require_same_user,
    set_token_cookie,
    verify_token,
)
from database import (
    COLL_ANNOUNCEMENTS,
    COLL_CATEGORIES,
    COLL_COMMENT_REPORTS,
    COLL_COMMENTS,
    COLL_PAYMENTS,
    COLL_POSTS,
    COLL_REPORTS,
    COLL_TAGS,
    COLL_USERS,
    FORUM_COLLECTIONS,
    clean,
    create_document,
    get_db,
    get_documents,
    next_sequence,
)
from feed import (
    POPULARITY_FILTERS,
    FeedQuery,
    build_pipeline,
    clean_joined,
    popularity_pipeline,
    resolve_mode,
)
from payments import (
    PAYMENT_CURRENCY,
    PaymentError,
    PaymentProcessor,
    get_payment_processor,
    is_valid_correlation_id,
    new_correlation_id,
    to_minor_units,
)
from schemas import (
    MEMBERSHIP_GOLD,
    AddCommentPayload,
    AddPostPayload,
    AddUserPayload,
    AdminPrivilegePayload,
    Announcement,
    AnnouncementPayload,
    Comment,
    CommentReportPayload,
    JwtPayload,
    PaymentRecord,
    Post,
    PriceRequest,
    ReportPayload,
    User,
    VotePayload,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = database.connect()
    database.ensure_indexes(db)
    database.seed_counters(db)
    yield
    database.close()


# App and CORS
app = FastAPI(title="Forum API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Store error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logger.error("Payment error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Payment processor error"})


def now():
    return datetime.now(timezone.utc)


def find_user(db: Database, email: str) -> Optional[dict]:
    return clean(db[COLL_USERS].find_one({"email": email}))


@app.get("/")
def read_root():
    return {"message": "Forum API running"}


@app.get("/health")
def health_check():
    db = database.db
    response = {"database": database.DATABASE_NAME, "connected": False, "counts": {}}
    if db is None:
        return response
    try:
        response["counts"] = {name: db[name].estimated_document_count() for name in FORUM_COLLECTIONS}
        response["connected"] = True
    except PyMongoError as e:
        logger.warning("Health check failed: %s", e)
    return response


# Reference lists and raw collections
@app.get("/category")
def list_categories(db: Database = Depends(get_db)):
    return get_documents(db, COLL_CATEGORIES)


@app.get("/tags")
def list_tags(db: Database = Depends(get_db)):
    return get_documents(db, COLL_TAGS)


@app.get("/posts")
def list_posts(db: Database = Depends(get_db)):
    return get_documents(db, COLL_POSTS)


@app.get("/comments")
def list_comments(db: Database = Depends(get_db)):
    return get_documents(db, COLL_COMMENTS)


@app.get("/users")
def list_users(db: Database = Depends(get_db)):
    return get_documents(db, COLL_USERS)


# Feed
@app.get("/mergedAllData")
def merged_all_data(query: FeedQuery = Depends(), db: Database = Depends(get_db)):
    mode = resolve_mode(query)
    logger.debug("Merged feed mode %s", mode.value)
    return [clean_joined(d) for d in db[COLL_POSTS].aggregate(build_pipeline(mode, query))]


@app.post("/posts/popularity")
def posts_by_popularity(filter: str, loadComment: Optional[int] = None, db: Database = Depends(get_db)):
    if filter not in POPULARITY_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown popularity filter: {filter}")
    return [clean_joined(d) for d in db[COLL_POSTS].aggregate(popularity_pipeline(filter, loadComment))]


# Auth routes
@app.post("/jwt")
async def issue_token(payload: JwtPayload, response: Response):
    token = create_access_token({"email": payload.email})
    set_token_cookie(response, token)
    return {"success": True}


@app.get("/logout")
async def logout(response: Response):
    clear_token_cookie(response)
    return {"success": True}


@app.post("/addUser")
def add_user(payload: AddUserPayload, db: Database = Depends(get_db)):
    if db[COLL_USERS].find_one({"email": payload.email}):
        return {"message": "User already exists", "insertedId": None}
    user = User(id=next_sequence(db, COLL_USERS), **payload.model_dump())
    try:
        create_document(db, COLL_USERS, user)
    except DuplicateKeyError:
        # lost a race with a concurrent sign-in for the same email
        return {"message": "User already exists", "insertedId": None}
    logger.info("Created user %s", user.id)
    return {"message": "User created", "insertedId": user.id}


# User profile
@app.get("/getDataA")
def get_my_data(decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    return find_user(db, decoded["email"])


@app.get("/myPost/{email}")
def my_posts(email: str, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    require_same_user(email, decoded)
    user = find_user(db, email)
    if not user:
        return []
    return get_documents(db, COLL_POSTS, {"authorId": user["id"]})


@app.get("/api/check-auth/{email}")
def check_auth(email: str, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    require_same_user(email, decoded)
    return {"admin": is_admin(find_user(db, email))}


# Admin
@app.get("/getDataAdmin")
def admin_stats(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return {
        "users": db[COLL_USERS].estimated_document_count(),
        "posts": db[COLL_POSTS].estimated_document_count(),
        "comments": db[COLL_COMMENTS].estimated_document_count(),
    }


@app.patch("/adminPriv")
def update_privileges(payload: AdminPrivilegePayload, admin=Depends(require_admin), db: Database = Depends(get_db)):
    updates = payload.updates()
    if not updates:
        raise HTTPException(status_code=400, detail="Nothing to update")
    res = db[COLL_USERS].update_one({"id": payload.id}, {"$set": updates})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s updated user %s: %s", admin["email"], payload.id, sorted(updates))
    return {"modifiedCount": res.modified_count}


@app.delete("/adminPriv/{user_id}")
def delete_user(user_id: int, admin=Depends(require_admin), db: Database = Depends(get_db)):
    res = db[COLL_USERS].delete_one({"id": user_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s deleted user %s", admin["email"], user_id)
    return {"deletedCount": res.deleted_count}


@app.post("/announcement")
def create_announcement(payload: AnnouncementPayload, admin=Depends(require_admin), db: Database = Depends(get_db)):
    ann = Announcement(
        id=next_sequence(db, COLL_ANNOUNCEMENTS),
        adminId=admin["id"],
        createdAt=now(),
        **payload.model_dump(),
    )
    return create_document(db, COLL_ANNOUNCEMENTS, ann)


@app.get("/getAnn")
def list_announcements(db: Database = Depends(get_db)):
    return get_documents(db, COLL_ANNOUNCEMENTS)


# Posts and comments
@app.post("/addPosts")
def add_post(payload: AddPostPayload, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    author = find_user(db, decoded["email"])
    if not author:
        raise HTTPException(status_code=404, detail="User not found")
    post = Post(
        id=next_sequence(db, COLL_POSTS),
        authorId=author["id"],
        authorEmail=author["email"],
        postTime=now(),
        **payload.model_dump(),
    )
    doc = create_document(db, COLL_POSTS, post)
    try:
        db[COLL_USERS].update_one({"id": author["id"]}, {"$addToSet": {"posts": post.id}})
    except PyMongoError:
        db[COLL_POSTS].delete_one({"id": post.id})
        raise
    return doc


@app.post("/addComments")
def add_comment(payload: AddCommentPayload, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    if not db[COLL_POSTS].find_one({"id": payload.postId}):
        raise HTTPException(status_code=404, detail="Post not found")
    commenter = find_user(db, decoded["email"]) or {}
    comment = Comment(
        id=next_sequence(db, COLL_COMMENTS),
        commenterEmail=decoded["email"],
        commenterName=commenter.get("username"),
        commentTime=now(),
        **payload.model_dump(),
    )
    doc = create_document(db, COLL_COMMENTS, comment)
    try:
        db[COLL_POSTS].update_one({"id": payload.postId}, {"$addToSet": {"comments": comment.id}})
    except PyMongoError:
        db[COLL_COMMENTS].delete_one({"id": comment.id})
        raise
    return doc


@app.delete("/deleteComment/{comment_id}")
def delete_comment(comment_id: int, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    comment = db[COLL_COMMENTS].find_one({"id": comment_id})
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.get("commenterEmail") != decoded["email"] and not is_admin(find_user(db, decoded["email"])):
        raise HTTPException(status_code=403, detail="forbidden access")
    db[COLL_POSTS].update_one({"id": comment["postId"]}, {"$pull": {"comments": comment_id}})
    res = db[COLL_COMMENTS].delete_one({"id": comment_id})
    return {"deletedCount": res.deleted_count}


@app.patch("/updateLikes")
def update_votes(payload: VotePayload, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    field = "upVotes" if payload.vote == "up" else "downVotes"
    doc = db[COLL_POSTS].find_one_and_update(
        {"id": payload.id},
        {"$inc": {field: 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Post not found")
    return {"id": doc["id"], "upVotes": doc.get("upVotes", 0), "downVotes": doc.get("downVotes", 0)}


# Reports
def file_report(db: Database, collection: str, payload: ReportPayload, reporter: str) -> dict:
    record = {
        "reportId": next_sequence(db, collection),
        "reporterEmail": reporter,
        "reportedAt": now(),
        **payload.model_dump(),
    }
    return create_document(db, collection, record)


@app.post("/makeReport")
def make_report(payload: ReportPayload, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    return file_report(db, COLL_REPORTS, payload, decoded["email"])


@app.post("/commentReport")
def comment_report(payload: CommentReportPayload, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    return file_report(db, COLL_COMMENT_REPORTS, payload, decoded["email"])


@app.get("/reportsData")
def list_reports(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return get_documents(db, COLL_REPORTS)


@app.get("/commentReportsData")
def list_comment_reports(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return get_documents(db, COLL_COMMENT_REPORTS)


# Payments
@app.get("/getRandUUid")
async def random_uuid():
    return {"uuid": new_correlation_id()}


@app.post("/paymentsUuidRand/{correlation_id}")
async def check_correlation_id(correlation_id: str):
    if not is_valid_correlation_id(correlation_id):
        return JSONResponse(status_code=400, content=False)
    return True


@app.post("/create-payment-intent")
def create_payment_intent(
    payload: PriceRequest,
    decoded: dict = Depends(verify_token),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    return processor.create_charge_intent(to_minor_units(payload.price), PAYMENT_CURRENCY, ["card"])


@app.post("/paymentsData")
def save_payment(payload: PaymentRecord, decoded: dict = Depends(verify_token), db: Database = Depends(get_db)):
    if payload.uuid is not None and not is_valid_correlation_id(payload.uuid):
        return JSONResponse(status_code=400, content=False)
    record = {**payload.model_dump(), "email": decoded["email"], "paidAt": now()}
    doc = create_document(db, COLL_PAYMENTS, record)
    db[COLL_USERS].update_one({"email": decoded["email"]}, {"$set": {"membershipStatus": MEMBERSHIP_GOLD}})
    logger.info("Recorded payment %s", payload.transactionId)
    return doc


@app.get("/paymentHistories")
def payment_histories(email: Optional[str] = None, db: Database = Depends(get_db)):
    return get_documents(db, COLL_PAYMENTS, {"email": email} if email else {})


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
