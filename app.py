# app.py
"""
Monolog: a daily photo journal API (Flask + SQLite).

Users post up to five photos a day, follow each other, comment, favorite,
and talk in communities. Uploaded images are stored under the upload
folder and served from /uploads.

Key production notes:
 - Configure via MONOLOG_* environment variables (see defaults below).
 - Serve with a WSGI server, e.g.
     gunicorn -w 4 -b 0.0.0.0:5000 app:app
 - Rate limits and caches live in process memory, so each worker keeps
   its own counters.
 - Maintenance commands: `flask --app app <command>` (see the CLI section).
"""

import os
import re
import json
import shutil
import sqlite3
import datetime
import functools
import secrets
import string
import uuid
import logging
from typing import Optional
from pathlib import Path

import click
import jwt  # PyJWT
import requests
from flask import (
    Flask,
    request,
    jsonify,
    g,
    send_from_directory,
    abort,
)
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename

import imaging
from cache import api_cache, feed_cache, cache_key
from dates import (
    utc_now,
    iso,
    parse_timestamp,
    to_date_key,
    day_bounds_utc,
    hours_since,
    month_matrix,
    format_relative,
)
from dedupe import dedupe, forget
from moderation import check_comment
from ratelimit import (
    api_limiter,
    strict_limiter,
    signin_ip_limiter,
    signin_identifier_limiter,
)
from textparse import parse_hashtags, parse_mentions, render_caption, slugify

# -----------------------
# Configuration (env)
# -----------------------
BASE_DIR = Path(__file__).parent.resolve()
DATABASE = os.environ.get("MONOLOG_DATABASE", str(BASE_DIR / "monolog.db"))
UPLOAD_FOLDER = os.environ.get("MONOLOG_UPLOAD_FOLDER", str(BASE_DIR / "uploads"))
JWT_SECRET = os.environ.get("MONOLOG_JWT_SECRET", None)
if not JWT_SECRET:
    # In production this MUST be set. For dev only fallback:
    JWT_SECRET = "please_set_MONOLOG_JWT_SECRET_in_env"
JWT_ALGORITHM = os.environ.get("MONOLOG_JWT_ALGORITHM", "HS256")
JWT_EXP_SECONDS = int(os.environ.get("MONOLOG_JWT_EXP_SECONDS", 60 * 60 * 24 * 7))  # default 7 days
RESET_EXP_SECONDS = int(os.environ.get("MONOLOG_RESET_EXP_SECONDS", 60 * 60))

MAX_CONTENT_LENGTH = int(os.environ.get("MONOLOG_MAX_CONTENT_LENGTH", 16 * 1024 * 1024))  # 16 MB by default
CORS_ORIGINS = os.environ.get("MONOLOG_CORS_ORIGINS", "*")  # set to origin(s) in prod
DISABLE_UPLOAD_LIMIT = os.environ.get("MONOLOG_DISABLE_UPLOAD_LIMIT", "0").lower() in ("1", "true", "yes")
BOOTSTRAP_INVITE = os.environ.get("MONOLOG_BOOTSTRAP_INVITE", "EARLYADOPTER")
SITE_URL = os.environ.get("MONOLOG_SITE_URL", "http://localhost:5000")

IMAGE_MAX_EDGE = int(os.environ.get("MONOLOG_IMAGE_MAX_EDGE", 1920))
IMAGE_MAX_BYTES = int(float(os.environ.get("MONOLOG_IMAGE_MAX_MB", 2)) * 1024 * 1024)
THUMB_EDGE = int(os.environ.get("MONOLOG_THUMB_EDGE", 700))

SPOTIFY_CLIENT_ID = os.environ.get("SPOTIFY_CLIENT_ID")
SPOTIFY_CLIENT_SECRET = os.environ.get("SPOTIFY_CLIENT_SECRET")

# Pagination limits
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

MAX_IMAGES_PER_POST = 5
MAX_COMMENT_LENGTH = 500
USERNAME_COOLDOWN_HOURS = 24
FEED_TTL = 10
FOLLOWING_TTL = 5 * 60
DEFAULT_AVATAR = "/logo.svg"

# single path segments the web client owns; usernames may not take them
RESERVED_ROUTES = {
    "about", "api", "calendar", "explore", "favorites",
    "feed", "post", "profile", "upload", "admin",
    "settings", "help", "terms", "privacy", "login",
    "register", "signup", "signin", "logout", "auth",
    "_next", "_vercel", "favicon.ico", "robots.txt", "sitemap.xml",
    "hashtags", "communities", "notifications", "search",
}
REPORT_REASONS = ("spam", "harassment", "inappropriate", "copyright", "hate_speech", "other")

# create folders
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

# -----------------------
# App init
# -----------------------
app = Flask(__name__, static_folder=None)
app.config["UPLOAD_FOLDER"] = UPLOAD_FOLDER
app.config["DATABASE"] = DATABASE
app.config["SECRET_KEY"] = JWT_SECRET
app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
app.config["DISABLE_UPLOAD_LIMIT"] = DISABLE_UPLOAD_LIMIT
app.config["BOOTSTRAP_INVITE"] = BOOTSTRAP_INVITE

# CORS
CORS(app, resources={r"/api/*": {"origins": CORS_ORIGINS}, r"/uploads/*": {"origins": "*"}})

# Logging
logging.basicConfig(level=os.environ.get("MONOLOG_LOG_LEVEL", "INFO"))
logger = logging.getLogger("monolog")


class ApiError(Exception):
    """Raised from helpers to abort a request with a JSON error body."""

    def __init__(self, message, status=400, **extra):
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra


# -----------------------
# Database helpers
# -----------------------
def get_db():
    """
    Returns a sqlite3.Connection. We use check_same_thread=False to allow
    multi-worker WSGI servers (sqlite still has concurrency limits).
    """
    if "db" not in g:
        conn = sqlite3.connect(app.config["DATABASE"], check_same_thread=False)
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()
        g.db = conn
    return g.db


@app.teardown_appcontext
def close_db(exc):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def query_db(query, args=(), one=False):
    cur = get_db().execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


def execute_db(query, args=()):
    conn = get_db()
    cur = conn.execute(query, args)
    conn.commit()
    rowcount = cur.rowcount
    cur.close()
    return rowcount


def new_id():
    return uuid.uuid4().hex


def now_iso():
    return iso(utc_now())


def placeholders(items):
    return ",".join("?" for _ in items)


# -----------------------
# DB initialization
# -----------------------
def init_db():
    db = get_db()
    cur = db.cursor()
    cur.executescript(
        """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    display_name TEXT,
    avatar_url TEXT,
    bio TEXT DEFAULT '',
    social_links TEXT,
    username_changed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    image_urls TEXT NOT NULL,
    thumbnail_urls TEXT,
    alt TEXT,
    caption TEXT DEFAULT '',
    hashtags TEXT,
    spotify_link TEXT,
    public INTEGER NOT NULL DEFAULT 1,
    camera TEXT,
    lens TEXT,
    film_type TEXT,
    weather_condition TEXT,
    weather_temperature REAL,
    weather_location TEXT,
    location_latitude REAL,
    location_longitude REAL,
    location_address TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_posts_user_created ON posts(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at);

CREATE TABLE IF NOT EXISTS post_mentions (
    post_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    PRIMARY KEY(post_id, user_id),
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS follows (
    follower_id TEXT NOT NULL,
    following_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY(follower_id, following_id),
    FOREIGN KEY(follower_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(following_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS favorites (
    user_id TEXT NOT NULL,
    post_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY(user_id, post_id),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    post_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    parent_id TEXT,
    text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(parent_id) REFERENCES comments(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id, created_at);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    actor_id TEXT,
    type TEXT NOT NULL,
    post_id TEXT,
    reference_id TEXT,
    text TEXT,
    read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(actor_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at);

CREATE TABLE IF NOT EXISTS communities (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL COLLATE NOCASE,
    slug TEXT UNIQUE NOT NULL,
    description TEXT NOT NULL,
    image_url TEXT,
    creator_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(creator_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS community_members (
    community_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    PRIMARY KEY(community_id, user_id),
    FOREIGN KEY(community_id) REFERENCES communities(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    community_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    slug TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(community_id) REFERENCES communities(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS thread_replies (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(thread_id) REFERENCES threads(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS invites (
    id TEXT PRIMARY KEY,
    code TEXT UNIQUE NOT NULL,
    created_by TEXT,
    used_by TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    FOREIGN KEY(created_by) REFERENCES users(id) ON DELETE SET NULL,
    FOREIGN KEY(used_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS reports (
    id TEXT PRIMARY KEY,
    reporter_id TEXT NOT NULL,
    post_id TEXT,
    comment_id TEXT,
    reason TEXT NOT NULL,
    details TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    FOREIGN KEY(reporter_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE,
    FOREIGN KEY(comment_id) REFERENCES comments(id) ON DELETE CASCADE
);
"""
    )
    db.commit()
    cur.close()


# -----------------------
# JWT helpers
# -----------------------
def create_token(user_id: str, typ: str = "access", expires_in: Optional[int] = None):
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "sub": str(user_id),
        "typ": typ,
        "iat": now,
        "exp": now + datetime.timedelta(seconds=expires_in or JWT_EXP_SECONDS),
    }
    return jwt.encode(payload, app.config["SECRET_KEY"], algorithm=JWT_ALGORITHM)


def decode_token(token: str, typ: str = "access") -> Optional[dict]:
    try:
        payload = jwt.decode(token, app.config["SECRET_KEY"], algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    if payload.get("typ", "access") != typ:
        return None
    return payload


def _user_from_header():
    """(user_row, error_message) for the Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None, "Missing or invalid Authorization header"
    payload = decode_token(auth.split(" ", 1)[1].strip())
    if not payload:
        return None, "Invalid or expired token"
    row = get_user_row(payload["sub"])
    if not row:
        return None, "User not found"
    return row, None


def jwt_required(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        row, error = _user_from_header()
        if error:
            return jsonify({"error": error}), 401
        g.current_user = row
        return f(*args, **kwargs)
    return wrapper


def jwt_optional(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        row, _ = _user_from_header()
        g.current_user = row
        return f(*args, **kwargs)
    return wrapper


def viewer_id():
    viewer = getattr(g, "current_user", None)
    return viewer["id"] if viewer else None


# -----------------------
# Serializers
# -----------------------
def _json_list(value):
    if not value:
        return []
    if isinstance(value, list):
        return value
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return [value]
    if isinstance(decoded, list):
        return decoded
    return [decoded]


def user_to_dict(row, private=False):
    if row is None:
        return None
    data = {
        "id": row["id"],
        "username": row["username"],
        "displayName": row["display_name"],
        "avatarUrl": row["avatar_url"] or DEFAULT_AVATAR,
        "bio": row["bio"] or "",
        "socialLinks": json.loads(row["social_links"]) if row["social_links"] else {},
        "joinedAt": row["created_at"],
        "usernameChangedAt": row["username_changed_at"],
    }
    if private:
        data["email"] = row["email"]
    return data


def user_summary(user_id, username, display_name, avatar_url):
    return {
        "id": user_id,
        "username": username,
        "displayName": display_name,
        "avatarUrl": avatar_url or DEFAULT_AVATAR,
    }


POST_SELECT = """
SELECT p.*,
       u.username AS author_username,
       u.display_name AS author_display_name,
       u.avatar_url AS author_avatar_url,
       (SELECT COUNT(*) FROM comments c WHERE c.post_id = p.id) AS comments_count
FROM posts p
JOIN users u ON u.id = p.user_id
"""


def post_to_dict(row):
    """Hydrate a POST_SELECT row into the API shape."""
    if row is None:
        return None
    image_urls = _json_list(row["image_urls"])
    thumbs = _json_list(row["thumbnail_urls"])
    # thumbnails line up with images; fall back to the full image
    thumbnail_urls = [thumbs[i] if i < len(thumbs) and thumbs[i] else url for i, url in enumerate(image_urls)]
    alt = _json_list(row["alt"])
    weather = None
    if row["weather_condition"] or row["weather_temperature"] is not None or row["weather_location"]:
        weather = {
            "condition": row["weather_condition"],
            "temperature": row["weather_temperature"],
            "location": row["weather_location"],
        }
    location = None
    if row["location_latitude"] is not None and row["location_longitude"] is not None:
        location = {
            "latitude": row["location_latitude"],
            "longitude": row["location_longitude"],
            "address": row["location_address"],
        }
    caption = row["caption"] or ""
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "imageUrls": image_urls,
        "thumbnailUrls": thumbnail_urls,
        "alt": alt,
        "caption": caption,
        "captionHtml": str(render_caption(caption)),
        "hashtags": _json_list(row["hashtags"]),
        "spotifyLink": row["spotify_link"],
        "createdAt": row["created_at"],
        "public": bool(row["public"]),
        "camera": row["camera"],
        "lens": row["lens"],
        "filmType": row["film_type"],
        "weather": weather,
        "location": location,
        "user": user_summary(row["user_id"], row["author_username"], row["author_display_name"], row["author_avatar_url"]),
        "commentsCount": row["comments_count"],
    }


def comment_to_dict(row):
    return {
        "id": row["id"],
        "postId": row["post_id"],
        "parentId": row["parent_id"],
        "text": row["text"],
        "createdAt": row["created_at"],
        "user": user_summary(row["user_id"], row["username"], row["display_name"], row["avatar_url"]),
    }


# -----------------------
# User lookups
# -----------------------
def get_user_row(user_id):
    return query_db("SELECT * FROM users WHERE id = ?", (user_id,), one=True)


def find_user_by_username(username):
    """Exact match first, then case-insensitive for legacy mixed-case rows."""
    if not username:
        return None
    row = query_db("SELECT * FROM users WHERE username = ?", (username,), one=True)
    if row:
        return row
    return query_db("SELECT * FROM users WHERE username = ? COLLATE NOCASE LIMIT 1", (username,), one=True)


def find_user_by_email(email):
    return query_db("SELECT * FROM users WHERE email = ? COLLATE NOCASE", (email.strip(),), one=True)


def get_following_ids(user_id):
    """Ids the user follows; cached and de-duplicated across concurrent requests."""
    key = cache_key("following", user_id)

    def load():
        rows = query_db("SELECT following_id FROM follows WHERE follower_id = ?", (user_id,))
        return [r["following_id"] for r in rows]

    return api_cache.get_or_set(key, lambda: dedupe(key, load), ttl=FOLLOWING_TTL)


def invalidate_feeds(user_id=None, post_id=None):
    if user_id:
        api_cache.invalidate_user(user_id)
        forget(cache_key("following", user_id))
    feed_cache.invalidate_post(post_id)


# -----------------------
# Validation helpers
# -----------------------
EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
USERNAME_RE = re.compile(r"^[a-z0-9._-]+$")


def validate_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def validate_username(username: str, exclude_user_id=None) -> Optional[str]:
    """Return an error message, or None when the (lowercased) name is usable."""
    if len(username) < 3 or len(username) > 32:
        return "Username must be 3-32 characters"
    if not USERNAME_RE.match(username):
        return "Username may only contain letters, numbers, '.', '_' and '-'"
    if username in RESERVED_ROUTES:
        return "Username is reserved"
    taken = find_user_by_username(username)
    if taken and taken["id"] != exclude_user_id:
        return "Username already taken"
    return None


def parse_limit(default=DEFAULT_PAGE_LIMIT, maximum=MAX_PAGE_LIMIT):
    try:
        limit = int(request.args.get("limit", default))
    except ValueError:
        raise ApiError("limit must be an integer")
    return max(1, min(limit, maximum))


def parse_before():
    before = request.args.get("before")
    if not before:
        return None
    try:
        return iso(parse_timestamp(before))
    except ValueError:
        raise ApiError("before must be an ISO-8601 timestamp")


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def str_field(data, name, strip=True):
    """``data[name]`` as a string; missing or null reads as ``""``."""
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ApiError(f"{name} must be a string")
    return value.strip() if strip else value


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def throttle(limiter, key):
    status = limiter.hit(key)
    if not status.allowed:
        retry = limiter.retry_after(status)
        raise ApiError("Too many requests", 429, retryAfter=retry)


# -----------------------
# Notifications
# -----------------------
def notify(user_id, actor_id, type_, post_id=None, reference_id=None, text=None):
    """Best effort: a failed insert is logged and never fails the request."""
    if not user_id or user_id == actor_id:
        return
    try:
        execute_db(
            """INSERT INTO notifications (id, user_id, actor_id, type, post_id, reference_id, text, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (new_id(), user_id, actor_id, type_, post_id, reference_id, text, now_iso()),
        )
    except sqlite3.Error as exc:
        logger.warning("notification insert failed (%s for %s): %s", type_, user_id, exc)


def notify_mentions(text, actor_id, post_id=None, reference_id=None, message="You were mentioned"):
    mentioned = []
    for name in parse_mentions(text):
        row = find_user_by_username(name)
        if row and row["id"] != actor_id and row["id"] not in mentioned:
            mentioned.append(row["id"])
            notify(row["id"], actor_id, "mention", post_id=post_id, reference_id=reference_id, text=message)
    return mentioned


# -----------------------
# Storage
# -----------------------
def upload_path(*parts):
    return os.path.join(app.config["UPLOAD_FOLDER"], *parts)


def public_url(relpath):
    return "/uploads/" + relpath.replace(os.sep, "/")


def store_image(user_id, data, edits=None, filename=None):
    """
    Decode, optionally edit, compress and store an image for ``user_id``.
    Returns ``(public_url, thumbnail_url)``. Raises ValueError on bad input.
    """
    img = imaging.open_image(data)
    if edits:
        img = imaging.render_edits(img, imaging.edit_settings_from_dict(edits))
    full = imaging.compress_image(img, max_edge=IMAGE_MAX_EDGE, target_bytes=IMAGE_MAX_BYTES)
    thumb = imaging.make_thumbnail(img, edge=THUMB_EDGE)

    stem = secure_filename(os.path.splitext(filename or "")[0])[:40]
    name = f"{uuid.uuid4().hex}{'_' + stem if stem else ''}.jpg"
    user_dir = secure_filename(str(user_id))
    os.makedirs(upload_path(user_dir, "thumbs"), exist_ok=True)
    with open(upload_path(user_dir, name), "wb") as f:
        f.write(full)
    with open(upload_path(user_dir, "thumbs", name), "wb") as f:
        f.write(thumb)
    return public_url(f"{user_dir}/{name}"), public_url(f"{user_dir}/thumbs/{name}")


def remove_stored_file(url):
    """Delete a file we serve from /uploads; other URLs are left alone."""
    if not url or not url.startswith("/uploads/"):
        return False
    rel = os.path.normpath(url[len("/uploads/"):])
    if rel.startswith("..") or os.path.isabs(rel):
        return False
    path = upload_path(rel)
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("could not remove %s: %s", path, exc)
        return False


def delete_post_row(row):
    for url in _json_list(row["image_urls"]) + _json_list(row["thumbnail_urls"]):
        remove_stored_file(url)
    db = get_db()
    db.execute("DELETE FROM comments WHERE post_id = ?", (row["id"],))
    db.execute("DELETE FROM posts WHERE id = ?", (row["id"],))
    db.commit()


# -----------------------
# Post helpers
# -----------------------
HEX_SUFFIX_RE = re.compile(r"-([0-9a-fA-F]{6,})$")


def resolve_post(raw):
    """
    Find a post by id or by a slug ending in ``-<hex>``. The hex part is
    tried as an exact id, then as an id prefix, then the raw value.
    """
    m = HEX_SUFFIX_RE.search(raw)
    candidate = m.group(1).lower() if m else raw
    row = query_db(POST_SELECT + " WHERE p.id = ?", (candidate,), one=True)
    if row:
        return row
    if len(candidate) <= 12 and re.match(r"^[0-9a-f]+$", candidate):
        row = query_db(
            POST_SELECT + " WHERE p.id LIKE ? ORDER BY p.created_at DESC LIMIT 1",
            (candidate + "%",),
            one=True,
        )
        if row:
            return row
    if candidate != raw:
        return query_db(POST_SELECT + " WHERE p.id = ?", (raw,), one=True)
    return None


def can_view(row, uid):
    return bool(row["public"]) or row["user_id"] == uid


def daily_post_status(user_id):
    """``None`` when the user may post, otherwise the 'already posted' payload."""
    now = utc_now()
    start, end = day_bounds_utc(now)
    last = query_db(
        "SELECT created_at FROM posts WHERE user_id = ? AND created_at >= ? AND created_at < ? "
        "ORDER BY created_at DESC LIMIT 1",
        (user_id, iso(start), iso(end)),
        one=True,
    )
    if not last:
        return None
    return {
        "reason": "You already posted today",
        "nextAllowedAt": int(end.timestamp() * 1000),
        "lastPostedAt": int(parse_timestamp(last["created_at"]).timestamp() * 1000),
    }


def _alt_list(alt, count):
    if alt is None:
        return []
    if isinstance(alt, str):
        return [alt] * count if alt else []
    if isinstance(alt, list):
        return [str(a) if a is not None else "" for a in alt][:count]
    raise ApiError("alt must be a string or a list of strings")


def _float_or_none(value, name):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{name} must be a number")


def fetch_posts(where, args, limit, before=None, order="DESC"):
    sql = POST_SELECT + " WHERE " + where
    args = list(args)
    if before:
        sql += " AND p.created_at < ?"
        args.append(before)
    sql += f" ORDER BY p.created_at {order} LIMIT ?"
    args.append(limit)
    return [post_to_dict(r) for r in query_db(sql, args)]


# -----------------------
# Routes: auth
# -----------------------
@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


@app.route("/api/auth/signup", methods=["POST"])
def signup():
    data = json_body()
    email = str_field(data, "email").lower()
    password = str_field(data, "password", strip=False)
    username = str_field(data, "username").lower()
    invite_code = str_field(data, "inviteCode").upper()

    if not email or not password or not username or not invite_code:
        return jsonify({"error": "email, password, username and inviteCode required"}), 400
    if not validate_email(email):
        return jsonify({"error": "Invalid email"}), 400
    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400
    error = validate_username(username)
    if error:
        return jsonify({"error": error}), 400
    if find_user_by_email(email):
        return jsonify({"error": "Email already registered"}), 400

    invite = None
    if invite_code != app.config["BOOTSTRAP_INVITE"].upper():
        invite = query_db("SELECT * FROM invites WHERE code = ?", (invite_code,), one=True)
        if not invite_is_valid(invite):
            return jsonify({"error": "Invalid or expired invite code"}), 400

    user_id = new_id()
    execute_db(
        "INSERT INTO users (id, email, username, password_hash, created_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, email, username, generate_password_hash(password), now_iso()),
    )
    if invite:
        execute_db("UPDATE invites SET used_by = ? WHERE id = ?", (user_id, invite["id"]))
    logger.info("new user %s (%s)", username, user_id)
    return jsonify({"user": user_to_dict(get_user_row(user_id), private=True), "token": create_token(user_id)}), 201


@app.route("/api/auth/signin", methods=["POST"])
def signin():
    data = json_body()
    identifier = str_field(data, "identifier") or str_field(data, "email") or str_field(data, "username")
    password = str_field(data, "password", strip=False)
    if not identifier or not password:
        return jsonify({"error": "identifier and password required"}), 400

    ip_key = client_ip()
    ident_key = identifier.lower()
    for limiter, key in ((signin_ip_limiter, ip_key), (signin_identifier_limiter, ident_key)):
        status = limiter.check(key)
        if not status.allowed:
            retry = limiter.retry_after(status)
            resp = jsonify({"error": "Too many sign-in attempts", "retryAfter": retry})
            resp.headers["Retry-After"] = str(retry)
            return resp, 429

    if "@" in identifier:
        row = find_user_by_email(identifier)
    else:
        row = find_user_by_username(identifier)

    if not row or not check_password_hash(row["password_hash"], password):
        signin_ip_limiter.record_failure(ip_key)
        signin_identifier_limiter.record_failure(ident_key)
        if not row:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"error": "Invalid credentials"}), 401

    signin_ip_limiter.record_success(ip_key)
    signin_identifier_limiter.record_success(ident_key)
    return jsonify({"user": user_to_dict(row, private=True), "token": create_token(row["id"])})


@app.route("/api/auth/resolve-username", methods=["POST"])
def resolve_username():
    username = str_field(json_body(), "username")
    if not username:
        return jsonify({"ok": False, "error": "username required"}), 400
    row = find_user_by_username(username)
    if not row:
        return jsonify({"ok": False, "email": None}), 404
    return jsonify({"ok": True, "email": row["email"]})


@app.route("/api/auth/forgot-password", methods=["POST"])
def forgot_password():
    email = str_field(json_body(), "email")
    if not email or not validate_email(email):
        return jsonify({"error": "A valid email is required"}), 400
    row = find_user_by_email(email)
    if row:
        token = create_token(row["id"], typ="reset", expires_in=RESET_EXP_SECONDS)
        # mail delivery is handled outside this service
        logger.info("password reset link for %s: %s/reset-password?token=%s", row["id"], SITE_URL, token)
    # same answer either way so the endpoint can't reveal which emails have accounts
    return jsonify({"ok": True})


@app.route("/api/auth/reset-password", methods=["POST"])
def reset_password():
    data = json_body()
    payload = decode_token(str_field(data, "token", strip=False), typ="reset")
    if not payload:
        return jsonify({"error": "Invalid or expired reset token"}), 400
    password = str_field(data, "password", strip=False)
    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400
    if not get_user_row(payload["sub"]):
        return jsonify({"error": "User not found"}), 404
    execute_db("UPDATE users SET password_hash = ? WHERE id = ?", (generate_password_hash(password), payload["sub"]))
    return jsonify({"ok": True})


# -----------------------
# Routes: users
# -----------------------
@app.route("/api/users/me", methods=["GET"])
@jwt_required
def me():
    return jsonify({"user": user_to_dict(g.current_user, private=True)})


@app.route("/api/users/me", methods=["PATCH", "PUT"])
@jwt_required
def update_me():
    data = json_body()
    user = g.current_user
    updates = {}

    if "username" in data and data["username"] is not None:
        username = str(data["username"]).strip().lower()
        if username != user["username"]:
            if user["username_changed_at"]:
                elapsed = hours_since(user["username_changed_at"])
                if elapsed < USERNAME_COOLDOWN_HOURS:
                    hours_left = int(USERNAME_COOLDOWN_HOURS - elapsed) + 1
                    return jsonify({
                        "error": f"You can change your username again in {hours_left} hours",
                        "hoursRemaining": hours_left,
                    }), 403
            error = validate_username(username, exclude_user_id=user["id"])
            if error:
                return jsonify({"error": error}), 400
            updates["username"] = username
            updates["username_changed_at"] = now_iso()

    if "displayName" in data:
        updates["display_name"] = str_field(data, "displayName")[:80] or None
    if "avatarUrl" in data:
        updates["avatar_url"] = data["avatarUrl"] or None
    if "bio" in data:
        updates["bio"] = str_field(data, "bio")[:500]
    if "socialLinks" in data:
        links = data["socialLinks"] or {}
        if not isinstance(links, dict):
            return jsonify({"error": "socialLinks must be an object"}), 400
        updates["social_links"] = json.dumps(links)

    if not updates:
        return jsonify({"ok": True, "user": None})

    assignments = ", ".join(f"{col} = ?" for col in updates)
    execute_db(f"UPDATE users SET {assignments} WHERE id = ?", tuple(updates.values()) + (user["id"],))
    api_cache.invalidate_user(user["id"])
    feed_cache.invalidate_post()
    return jsonify({"ok": True, "user": user_to_dict(get_user_row(user["id"]), private=True)})


@app.route("/api/users/me", methods=["DELETE"])
@jwt_required
def delete_me():
    user_id = g.current_user["id"]
    execute_db("DELETE FROM users WHERE id = ?", (user_id,))
    folder = upload_path(secure_filename(user_id))
    if os.path.isdir(folder):
        shutil.rmtree(folder, ignore_errors=True)
    invalidate_feeds(user_id)
    logger.info("deleted account %s", user_id)
    return jsonify({"ok": True})


@app.route("/api/users/<user_id>", methods=["GET"])
def get_user(user_id):
    row = get_user_row(user_id)
    if not row:
        return jsonify({"error": "User not found"}), 404
    followers = query_db("SELECT COUNT(*) AS c FROM follows WHERE following_id = ?", (user_id,), one=True)["c"]
    following = query_db("SELECT COUNT(*) AS c FROM follows WHERE follower_id = ?", (user_id,), one=True)["c"]
    return jsonify({"user": user_to_dict(row), "followers": followers, "following": following})


@app.route("/api/users/username/<username>", methods=["GET"])
def get_user_by_username(username):
    return jsonify({"user": user_to_dict(find_user_by_username(username.strip()))})


@app.route("/api/users/<user_id>/posts", methods=["GET"])
@jwt_optional
def user_posts(user_id):
    limit = parse_limit()
    before = parse_before()
    if viewer_id() == user_id:
        posts = fetch_posts("p.user_id = ?", (user_id,), limit, before)
    else:
        posts = fetch_posts("p.user_id = ? AND p.public = 1", (user_id,), limit, before)
    return jsonify({"posts": posts})


def _follow_target():
    target_id = str_field(json_body(), "targetId")
    if not target_id:
        raise ApiError("targetId required")
    if target_id == g.current_user["id"]:
        raise ApiError("Cannot follow yourself")
    if not get_user_row(target_id):
        raise ApiError("Target user not found", 404)
    return target_id


@app.route("/api/users/follow", methods=["POST"])
@jwt_required
def follow():
    target_id = _follow_target()
    me_id = g.current_user["id"]
    created = execute_db(
        "INSERT OR IGNORE INTO follows (follower_id, following_id, created_at) VALUES (?, ?, ?)",
        (me_id, target_id, now_iso()),
    )
    if created:
        notify(target_id, me_id, "follow", text="started following you")
    invalidate_feeds(me_id)
    return jsonify({"ok": True, "following": True})


@app.route("/api/users/unfollow", methods=["POST"])
@jwt_required
def unfollow():
    target_id = _follow_target()
    me_id = g.current_user["id"]
    execute_db("DELETE FROM follows WHERE follower_id = ? AND following_id = ?", (me_id, target_id))
    invalidate_feeds(me_id)
    return jsonify({"ok": True, "following": False})


@app.route("/api/users/is-following/<target_id>", methods=["GET"])
@jwt_required
def is_following(target_id):
    return jsonify({"following": target_id in get_following_ids(g.current_user["id"])})


@app.route("/api/users/<user_id>/following", methods=["GET"])
def following_list(user_id):
    rows = query_db(
        """SELECT u.* FROM follows f JOIN users u ON f.following_id = u.id
           WHERE f.follower_id = ? ORDER BY f.created_at DESC""",
        (user_id,),
    )
    return jsonify({"users": [user_to_dict(r) for r in rows]})


@app.route("/api/users/<user_id>/followers", methods=["GET"])
def followers_list(user_id):
    rows = query_db(
        """SELECT u.* FROM follows f JOIN users u ON f.follower_id = u.id
           WHERE f.following_id = ? ORDER BY f.created_at DESC""",
        (user_id,),
    )
    return jsonify({"users": [user_to_dict(r) for r in rows]})


# -----------------------
# Routes: posts
# -----------------------
@app.route("/api/posts/can-post", methods=["GET"])
@jwt_required
def can_post():
    if app.config["DISABLE_UPLOAD_LIMIT"]:
        return jsonify({"allowed": True})
    status = daily_post_status(g.current_user["id"])
    if status is None:
        return jsonify({"allowed": True})
    return jsonify(dict(status, allowed=False))


@app.route("/api/posts/create", methods=["POST"])
@jwt_required
def create_post():
    data = json_body()
    user_id = g.current_user["id"]

    image_urls = data.get("imageUrls")
    if image_urls is None and data.get("imageUrl"):
        image_urls = [data["imageUrl"]]
    if not isinstance(image_urls, list) or not image_urls:
        return jsonify({"error": "At least one image is required"}), 400
    if len(image_urls) > MAX_IMAGES_PER_POST:
        return jsonify({"error": f"At most {MAX_IMAGES_PER_POST} images per post"}), 400
    if not all(isinstance(u, str) and u.strip() for u in image_urls):
        return jsonify({"error": "imageUrls must be non-empty strings"}), 400
    thumbnail_urls = data.get("thumbnailUrls") or []
    if not isinstance(thumbnail_urls, list):
        return jsonify({"error": "thumbnailUrls must be a list"}), 400

    replace = bool(data.get("replace"))
    if not app.config["DISABLE_UPLOAD_LIMIT"] and not replace:
        status = daily_post_status(user_id)
        if status is not None:
            return jsonify(dict(status, error=status["reason"])), 429

    caption = str_field(data, "caption")
    alt = _alt_list(data.get("alt"), len(image_urls))
    weather = data.get("weather") or {}
    location = data.get("location") or {}
    if not isinstance(weather, dict) or not isinstance(location, dict):
        return jsonify({"error": "weather and location must be objects"}), 400
    latitude = _float_or_none(location.get("latitude"), "location.latitude")
    longitude = _float_or_none(location.get("longitude"), "location.longitude")
    temperature = _float_or_none(weather.get("temperature"), "weather.temperature")
    spotify_link = str_field(data, "spotifyLink") or None
    camera = str_field(data, "camera") or None
    lens = str_field(data, "lens") or None
    film_type = str_field(data, "filmType") or None
    weather_condition = str_field(weather, "condition") or None
    weather_location = str_field(weather, "location") or None
    address = str_field(location, "address") or None

    # data URLs are stored here; plain URLs are taken as already uploaded
    stored_urls = []
    stored_thumbs = []
    for i, url in enumerate(image_urls):
        if url.startswith("data:"):
            try:
                _, payload = imaging.decode_data_url(url)
                full_url, thumb_url = store_image(user_id, payload)
            except ValueError as exc:
                return jsonify({"error": f"Image {i + 1}: {exc}"}), 400
            stored_urls.append(full_url)
            stored_thumbs.append(thumb_url)
        else:
            stored_urls.append(url)
            thumb = thumbnail_urls[i] if i < len(thumbnail_urls) else None
            stored_thumbs.append(thumb or url)

    if replace:
        start, end = day_bounds_utc(utc_now())
        for row in query_db(
            "SELECT * FROM posts WHERE user_id = ? AND created_at >= ? AND created_at < ?",
            (user_id, iso(start), iso(end)),
        ):
            delete_post_row(row)

    post_id = new_id()
    execute_db(
        """INSERT INTO posts (id, user_id, image_urls, thumbnail_urls, alt, caption, hashtags, spotify_link,
               public, camera, lens, film_type, weather_condition, weather_temperature, weather_location,
               location_latitude, location_longitude, location_address, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            post_id,
            user_id,
            json.dumps(stored_urls),
            json.dumps(stored_thumbs),
            json.dumps(alt),
            caption,
            json.dumps(parse_hashtags(caption)),
            spotify_link,
            0 if data.get("public") is False else 1,
            camera,
            lens,
            film_type,
            weather_condition,
            temperature,
            weather_location,
            latitude,
            longitude,
            address,
            now_iso(),
        ),
    )

    for mentioned_id in notify_mentions(caption, user_id, post_id=post_id, message="You were mentioned in a post"):
        execute_db("INSERT OR IGNORE INTO post_mentions (post_id, user_id) VALUES (?, ?)", (post_id, mentioned_id))

    invalidate_feeds(user_id)
    row = query_db(POST_SELECT + " WHERE p.id = ?", (post_id,), one=True)
    return jsonify({"ok": True, "post": post_to_dict(row)}), 201


@app.route("/api/posts/<post_id>", methods=["GET"])
@jwt_optional
def get_post(post_id):
    row = resolve_post(post_id)
    if not row or not can_view(row, viewer_id()):
        return jsonify({"error": "Post not found"}), 404
    return jsonify({"post": post_to_dict(row)})


@app.route("/api/posts/<post_id>", methods=["PATCH"])
@jwt_required
def update_post(post_id):
    row = query_db("SELECT * FROM posts WHERE id = ?", (post_id,), one=True)
    if not row:
        return jsonify({"error": "Post not found"}), 404
    if row["user_id"] != g.current_user["id"]:
        return jsonify({"error": "Forbidden"}), 403

    data = json_body()
    updates = {}
    if "caption" in data:
        caption = str_field(data, "caption")
        updates["caption"] = caption
        updates["hashtags"] = json.dumps(parse_hashtags(caption))
    if "alt" in data:
        updates["alt"] = json.dumps(_alt_list(data["alt"], len(_json_list(row["image_urls"]))))
    if "public" in data:
        updates["public"] = 1 if data["public"] else 0
    if updates:
        assignments = ", ".join(f"{col} = ?" for col in updates)
        execute_db(f"UPDATE posts SET {assignments} WHERE id = ?", tuple(updates.values()) + (post_id,))
        invalidate_feeds(post_id=post_id)
    row = query_db(POST_SELECT + " WHERE p.id = ?", (post_id,), one=True)
    return jsonify({"ok": True, "post": post_to_dict(row)})


@app.route("/api/posts/delete", methods=["POST"])
@jwt_required
def delete_post():
    post_id = str_field(json_body(), "id")
    if not post_id:
        return jsonify({"error": "id required"}), 400
    row = query_db("SELECT * FROM posts WHERE id = ?", (post_id,), one=True)
    if not row:
        return jsonify({"error": "Post not found"}), 404
    if row["user_id"] != g.current_user["id"]:
        return jsonify({"error": "Forbidden"}), 403
    delete_post_row(row)
    invalidate_feeds(g.current_user["id"], post_id)
    return jsonify({"ok": True})


@app.route("/api/posts/explore", methods=["GET"])
@jwt_optional
def explore_feed():
    limit = parse_limit()
    before = parse_before()
    uid = viewer_id()
    key = cache_key("explore", f"limit={limit}", f"before={before}" if before else None, f"uid={uid}" if uid else None)

    def load():
        where = "p.public = 1"
        args = []
        if uid:
            excluded = [uid] + get_following_ids(uid)
            where += f" AND p.user_id NOT IN ({placeholders(excluded)})"
            args.extend(excluded)
        return fetch_posts(where, args, limit, before)

    return jsonify({"ok": True, "posts": feed_cache.get_or_set(key, load, ttl=FEED_TTL)})


@app.route("/api/posts/following", methods=["GET"])
@jwt_optional
def following_feed():
    uid = viewer_id()
    if not uid:
        return jsonify({"ok": True, "posts": []})
    limit = parse_limit(default=10)
    before = parse_before()
    key = cache_key("following", "feed", uid, f"limit={limit}", f"before={before}" if before else None)

    def load():
        followed = get_following_ids(uid)
        where = "p.user_id = ?"
        args = [uid]
        if followed:
            where = f"(p.user_id = ? OR (p.public = 1 AND p.user_id IN ({placeholders(followed)})))"
            args.extend(followed)
        return fetch_posts(where, args, limit, before)

    return jsonify({"ok": True, "posts": feed_cache.get_or_set(key, load, ttl=FEED_TTL)})


@app.route("/api/posts/hashtag/<tag>", methods=["GET"])
def hashtag_feed(tag):
    tag = tag.strip().lstrip("#").lower()
    if not tag:
        return jsonify({"error": "tag required"}), 400
    limit = parse_limit(default=DEFAULT_PAGE_LIMIT, maximum=50)
    before = parse_before()
    key = cache_key("hashtag", tag, f"limit={limit}", f"before={before}" if before else None)

    def load():
        return fetch_posts(
            "p.public = 1 AND EXISTS (SELECT 1 FROM json_each(p.hashtags) WHERE json_each.value = ?)",
            (tag,),
            limit,
            before,
        )

    return jsonify({"ok": True, "tag": tag, "posts": feed_cache.get_or_set(key, load, ttl=FEED_TTL)})


@app.route("/api/posts/date/<date_key>", methods=["GET"])
@jwt_optional
def posts_by_date(date_key):
    try:
        day = datetime.datetime.strptime(date_key, "%Y-%m-%d").replace(tzinfo=datetime.timezone.utc)
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400
    start, end = day_bounds_utc(day)
    uid = viewer_id()
    posts = fetch_posts(
        "p.created_at >= ? AND p.created_at < ? AND (p.public = 1 OR p.user_id = ?)",
        (iso(start), iso(end), uid),
        MAX_PAGE_LIMIT,
    )
    return jsonify({"posts": posts})


@app.route("/api/posts/calendar", methods=["GET"])
@jwt_optional
def calendar_stats():
    try:
        year = int(request.args["year"])
        month_idx = int(request.args["month"])
        offset = int(request.args.get("offset", 0))
    except (KeyError, ValueError):
        return jsonify({"error": "year and month (0-11) must be integers"}), 400
    if not 0 <= month_idx <= 11:
        return jsonify({"error": "month must be 0-11"}), 400

    # offset follows Date.getTimezoneOffset(): minutes to add to local time to get UTC
    shift = datetime.timedelta(minutes=offset)
    start = datetime.datetime(year, month_idx + 1, 1, tzinfo=datetime.timezone.utc) + shift
    if month_idx == 11:
        end = datetime.datetime(year + 1, 1, 1, tzinfo=datetime.timezone.utc) + shift
    else:
        end = datetime.datetime(year, month_idx + 2, 1, tzinfo=datetime.timezone.utc) + shift

    uid = viewer_id()
    rows = query_db(
        "SELECT created_at, user_id FROM posts WHERE created_at >= ? AND created_at < ? AND (public = 1 OR user_id = ?)",
        (iso(start), iso(end), uid),
    )
    counts = {}
    mine = []
    for r in rows:
        key = to_date_key(parse_timestamp(r["created_at"]) - shift)
        counts[key] = counts.get(key, 0) + 1
        if uid and r["user_id"] == uid and key not in mine:
            mine.append(key)
    days = [to_date_key(d) if d else None for d in month_matrix(year, month_idx)]
    return jsonify({"counts": counts, "mine": sorted(mine), "days": days})


def _favorite_target():
    post_id = str_field(json_body(), "postId")
    if not post_id:
        raise ApiError("postId required")
    row = query_db("SELECT id, user_id, public FROM posts WHERE id = ?", (post_id,), one=True)
    if not row or not can_view(row, g.current_user["id"]):
        raise ApiError("Post not found", 404)
    return post_id


@app.route("/api/posts/favorite", methods=["POST"])
@jwt_required
def favorite():
    post_id = _favorite_target()
    execute_db(
        "INSERT OR IGNORE INTO favorites (user_id, post_id, created_at) VALUES (?, ?, ?)",
        (g.current_user["id"], post_id, now_iso()),
    )
    return jsonify({"ok": True, "favorite": True})


@app.route("/api/posts/unfavorite", methods=["POST"])
@jwt_required
def unfavorite():
    post_id = str_field(json_body(), "postId")
    if not post_id:
        return jsonify({"error": "postId required"}), 400
    execute_db("DELETE FROM favorites WHERE user_id = ? AND post_id = ?", (g.current_user["id"], post_id))
    return jsonify({"ok": True, "favorite": False})


@app.route("/api/posts/favorites", methods=["GET"])
@jwt_required
def list_favorites():
    uid = g.current_user["id"]
    rows = query_db(
        POST_SELECT
        + """ JOIN favorites f ON f.post_id = p.id
             WHERE f.user_id = ? AND (p.public = 1 OR p.user_id = ?)
             ORDER BY f.created_at DESC LIMIT ?""",
        (uid, uid, parse_limit()),
    )
    return jsonify({"posts": [post_to_dict(r) for r in rows]})


@app.route("/api/posts/<post_id>/favorite", methods=["GET"])
@jwt_required
def is_favorite(post_id):
    row = query_db(
        "SELECT 1 FROM favorites WHERE user_id = ? AND post_id = ?", (g.current_user["id"], post_id), one=True
    )
    return jsonify({"favorite": bool(row)})


@app.route("/api/posts/spotify-tracks", methods=["GET"])
@jwt_required
def spotify_tracks():
    posts = fetch_posts(
        "p.user_id = ? AND p.spotify_link IS NOT NULL AND p.spotify_link != ''",
        (g.current_user["id"],),
        parse_limit(default=50),
    )
    return jsonify({"posts": posts})


# -----------------------
# Routes: comments
# -----------------------
COMMENT_SELECT = """
SELECT c.*, u.username, u.display_name, u.avatar_url
FROM comments c JOIN users u ON u.id = c.user_id
"""


@app.route("/api/comments", methods=["GET"])
@jwt_optional
def list_comments():
    post_id = (request.args.get("postId") or "").strip()
    if not post_id:
        return jsonify({"error": "postId required"}), 400
    post = query_db("SELECT id, user_id, public FROM posts WHERE id = ?", (post_id,), one=True)
    if not post or not can_view(post, viewer_id()):
        return jsonify({"error": "Post not found"}), 404
    rows = query_db(COMMENT_SELECT + " WHERE c.post_id = ? ORDER BY c.created_at ASC", (post_id,))
    return jsonify({"comments": [comment_to_dict(r) for r in rows]})


@app.route("/api/comments/add", methods=["POST"])
@jwt_required
def add_comment():
    throttle(api_limiter, f"comments:{client_ip()}")
    data = json_body()
    post_id = str_field(data, "postId")
    text = str_field(data, "text")
    parent_id = str_field(data, "parentId") or None
    if not post_id:
        return jsonify({"error": "postId required"}), 400
    if len(text) > MAX_COMMENT_LENGTH:
        return jsonify({"error": f"Comment must be at most {MAX_COMMENT_LENGTH} characters"}), 400

    verdict = check_comment(text)
    if verdict.action != "allow":
        logger.info("comment %s by %s (score %d: %s)", verdict.action, g.current_user["id"], verdict.score, verdict.reasons)
        return jsonify({
            "error": "Comment rejected by moderation",
            "reasons": verdict.reasons,
            "score": verdict.score,
        }), 400

    post = query_db("SELECT id, user_id, public FROM posts WHERE id = ?", (post_id,), one=True)
    if not post or not can_view(post, g.current_user["id"]):
        return jsonify({"error": "Post not found"}), 404
    if parent_id and not query_db(
        "SELECT 1 FROM comments WHERE id = ? AND post_id = ?", (parent_id, post_id), one=True
    ):
        return jsonify({"error": "Parent comment not found"}), 404

    comment_id = new_id()
    created_at = now_iso()
    execute_db(
        "INSERT INTO comments (id, post_id, user_id, parent_id, text, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (comment_id, post_id, g.current_user["id"], parent_id, text, created_at),
    )
    notify(post["user_id"], g.current_user["id"], "comment", post_id=post_id, reference_id=comment_id, text=text[:240])
    notify_mentions(text, g.current_user["id"], post_id=post_id, reference_id=comment_id,
                    message="You were mentioned in a comment")

    row = query_db(COMMENT_SELECT + " WHERE c.id = ?", (comment_id,), one=True)
    return jsonify({"ok": True, "id": comment_id, "created_at": created_at, "comment": comment_to_dict(row)}), 201


@app.route("/api/comments/delete", methods=["POST"])
@jwt_required
def delete_comment():
    comment_id = str_field(json_body(), "commentId")
    if not comment_id:
        return jsonify({"error": "commentId required"}), 400
    row = query_db(
        "SELECT c.id, c.user_id, p.user_id AS post_owner FROM comments c JOIN posts p ON p.id = c.post_id WHERE c.id = ?",
        (comment_id,),
        one=True,
    )
    if not row:
        return jsonify({"error": "Comment not found"}), 404
    if g.current_user["id"] not in (row["user_id"], row["post_owner"]):
        return jsonify({"error": "Forbidden"}), 403
    execute_db("DELETE FROM comments WHERE id = ?", (comment_id,))
    return jsonify({"ok": True})


# -----------------------
# Routes: communities
# -----------------------
COMMUNITY_SELECT = """
SELECT c.*,
       u.username AS creator_username,
       u.display_name AS creator_display_name,
       u.avatar_url AS creator_avatar_url,
       (SELECT COUNT(*) FROM community_members m WHERE m.community_id = c.id) AS member_count,
       (SELECT COUNT(*) FROM threads t WHERE t.community_id = c.id) AS thread_count
FROM communities c
JOIN users u ON u.id = c.creator_id
"""


def community_to_dict(row, uid=None):
    data = {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "description": row["description"],
        "imageUrl": row["image_url"],
        "creatorId": row["creator_id"],
        "createdAt": row["created_at"],
        "memberCount": row["member_count"],
        "threadCount": row["thread_count"],
        "creator": user_summary(row["creator_id"], row["creator_username"], row["creator_display_name"], row["creator_avatar_url"]),
    }
    if uid is not None:
        data["isMember"] = is_member(row["id"], uid)
    return data


def is_member(community_id, user_id):
    if not user_id:
        return False
    return bool(query_db(
        "SELECT 1 FROM community_members WHERE community_id = ? AND user_id = ?", (community_id, user_id), one=True
    ))


def _validate_community(data, exclude_id=None):
    name = str_field(data, "name")
    description = str_field(data, "description")
    if not 3 <= len(name) <= 50:
        raise ApiError("Community name must be 3-50 characters")
    if not 10 <= len(description) <= 500:
        raise ApiError("Description must be 10-500 characters")
    taken = query_db("SELECT id FROM communities WHERE name = ? COLLATE NOCASE", (name,), one=True)
    if taken and taken["id"] != exclude_id:
        raise ApiError("A community with this name already exists", 409)
    return name, description


def _unique_community_slug(name, exclude_id=None):
    base = slugify(name) or "community"
    slug = base
    while True:
        taken = query_db("SELECT id FROM communities WHERE slug = ?", (slug,), one=True)
        if not taken or taken["id"] == exclude_id:
            return slug
        slug = f"{base}-{secrets.token_hex(3)}"


@app.route("/api/communities", methods=["GET"])
@jwt_optional
def list_communities():
    uid = viewer_id()
    community_id = request.args.get("id")
    if community_id:
        row = query_db(COMMUNITY_SELECT + " WHERE c.id = ?", (community_id,), one=True)
        if not row:
            return jsonify({"error": "Community not found"}), 404
        return jsonify({"community": community_to_dict(row, uid or "")})
    rows = query_db(COMMUNITY_SELECT + " ORDER BY c.created_at DESC LIMIT ?", (parse_limit(default=50),))
    return jsonify({"communities": [community_to_dict(r, uid) for r in rows]})


@app.route("/api/communities/slug/<slug>", methods=["GET"])
@jwt_optional
def community_by_slug(slug):
    row = query_db(COMMUNITY_SELECT + " WHERE c.slug = ?", (slug,), one=True)
    if not row:
        return jsonify({"error": "Community not found"}), 404
    return jsonify({"community": community_to_dict(row, viewer_id() or "")})


@app.route("/api/communities/create", methods=["POST"])
@jwt_required
def create_community():
    data = json_body()
    name, description = _validate_community(data)
    uid = g.current_user["id"]
    community_id = new_id()
    created_at = now_iso()
    db = get_db()
    db.execute(
        "INSERT INTO communities (id, name, slug, description, image_url, creator_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (community_id, name, _unique_community_slug(name), description, str_field(data, "imageUrl") or None, uid, created_at),
    )
    db.execute(
        "INSERT INTO community_members (community_id, user_id, joined_at) VALUES (?, ?, ?)",
        (community_id, uid, created_at),
    )
    db.commit()
    row = query_db(COMMUNITY_SELECT + " WHERE c.id = ?", (community_id,), one=True)
    return jsonify({"ok": True, "community": community_to_dict(row, uid)}), 201


@app.route("/api/communities/<community_id>", methods=["PATCH"])
@jwt_required
def update_community(community_id):
    row = query_db("SELECT * FROM communities WHERE id = ?", (community_id,), one=True)
    if not row:
        return jsonify({"error": "Community not found"}), 404
    if row["creator_id"] != g.current_user["id"]:
        return jsonify({"error": "Only the creator can edit this community"}), 403
    data = json_body()
    merged = {
        "name": data.get("name", row["name"]),
        "description": data.get("description", row["description"]),
    }
    name, description = _validate_community(merged, exclude_id=community_id)
    slug = row["slug"] if name == row["name"] else _unique_community_slug(name, exclude_id=community_id)
    image_url = data["imageUrl"] if "imageUrl" in data else row["image_url"]
    execute_db(
        "UPDATE communities SET name = ?, slug = ?, description = ?, image_url = ? WHERE id = ?",
        (name, slug, description, image_url or None, community_id),
    )
    row = query_db(COMMUNITY_SELECT + " WHERE c.id = ?", (community_id,), one=True)
    return jsonify({"ok": True, "community": community_to_dict(row, g.current_user["id"])})


@app.route("/api/communities", methods=["DELETE"])
@jwt_required
def delete_community():
    community_id = request.args.get("id") or json_body().get("id")
    if not community_id:
        return jsonify({"error": "id required"}), 400
    row = query_db("SELECT creator_id FROM communities WHERE id = ?", (community_id,), one=True)
    if not row:
        return jsonify({"error": "Community not found"}), 404
    if row["creator_id"] != g.current_user["id"]:
        return jsonify({"error": "Only the creator can delete this community"}), 403
    execute_db("DELETE FROM communities WHERE id = ?", (community_id,))
    return jsonify({"ok": True})


@app.route("/api/communities/join", methods=["POST"])
@jwt_required
def join_community():
    community_id = str_field(json_body(), "communityId")
    if not community_id:
        return jsonify({"error": "communityId required"}), 400
    if not query_db("SELECT 1 FROM communities WHERE id = ?", (community_id,), one=True):
        return jsonify({"error": "Community not found"}), 404
    if is_member(community_id, g.current_user["id"]):
        return jsonify({"error": "Already a member"}), 409
    execute_db(
        "INSERT INTO community_members (community_id, user_id, joined_at) VALUES (?, ?, ?)",
        (community_id, g.current_user["id"], now_iso()),
    )
    return jsonify({"ok": True})


@app.route("/api/communities/leave", methods=["POST"])
@jwt_required
def leave_community():
    community_id = str_field(json_body(), "communityId")
    if not community_id:
        return jsonify({"error": "communityId required"}), 400
    row = query_db("SELECT creator_id FROM communities WHERE id = ?", (community_id,), one=True)
    if not row:
        return jsonify({"error": "Community not found"}), 404
    if row["creator_id"] == g.current_user["id"]:
        return jsonify({"error": "The creator cannot leave the community"}), 400
    execute_db(
        "DELETE FROM community_members WHERE community_id = ? AND user_id = ?",
        (community_id, g.current_user["id"]),
    )
    return jsonify({"ok": True})


# -----------------------
# Routes: threads
# -----------------------
THREAD_SELECT = """
SELECT t.*,
       u.username, u.display_name, u.avatar_url,
       c.name AS community_name, c.slug AS community_slug,
       (SELECT COUNT(*) FROM thread_replies r WHERE r.thread_id = t.id) AS reply_count
FROM threads t
JOIN users u ON u.id = t.user_id
JOIN communities c ON c.id = t.community_id
"""

REPLY_SELECT = """
SELECT r.*, u.username, u.display_name, u.avatar_url
FROM thread_replies r JOIN users u ON u.id = r.user_id
"""


def thread_to_dict(row):
    return {
        "id": row["id"],
        "communityId": row["community_id"],
        "title": row["title"],
        "slug": row["slug"],
        "content": row["content"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "replyCount": row["reply_count"],
        "user": user_summary(row["user_id"], row["username"], row["display_name"], row["avatar_url"]),
        "community": {"id": row["community_id"], "name": row["community_name"], "slug": row["community_slug"]},
    }


def reply_to_dict(row):
    return {
        "id": row["id"],
        "threadId": row["thread_id"],
        "content": row["content"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "user": user_summary(row["user_id"], row["username"], row["display_name"], row["avatar_url"]),
    }


def _validate_thread(title, content):
    if not 5 <= len(title) <= 200:
        raise ApiError("Title must be 5-200 characters")
    if not 10 <= len(content) <= 10000:
        raise ApiError("Content must be 10-10000 characters")


def _validate_reply(content):
    if not 1 <= len(content) <= 5000:
        raise ApiError("Reply must be 1-5000 characters")


def _own_row(table, row_id, what):
    row = query_db(f"SELECT * FROM {table} WHERE id = ?", (row_id,), one=True)
    if not row:
        raise ApiError(f"{what} not found", 404)
    if row["user_id"] != g.current_user["id"]:
        raise ApiError("Forbidden", 403)
    return row


@app.route("/api/threads", methods=["GET"])
def get_threads():
    thread_id = request.args.get("id")
    community_id = request.args.get("communityId")
    if thread_id:
        row = query_db(THREAD_SELECT + " WHERE t.id = ?", (thread_id,), one=True)
        if not row:
            return jsonify({"error": "Thread not found"}), 404
        return jsonify({"thread": thread_to_dict(row)})
    if community_id:
        rows = query_db(
            THREAD_SELECT + " WHERE t.community_id = ? ORDER BY t.created_at DESC LIMIT ?",
            (community_id, parse_limit(default=50)),
        )
        return jsonify({"threads": [thread_to_dict(r) for r in rows]})
    return jsonify({"error": "id or communityId required"}), 400


@app.route("/api/threads/create", methods=["POST"])
@jwt_required
def create_thread():
    data = json_body()
    community_id = str_field(data, "communityId")
    title = str_field(data, "title")
    content = str_field(data, "content")
    if not community_id:
        return jsonify({"error": "communityId required"}), 400
    _validate_thread(title, content)
    if not query_db("SELECT 1 FROM communities WHERE id = ?", (community_id,), one=True):
        return jsonify({"error": "Community not found"}), 404
    if not is_member(community_id, g.current_user["id"]):
        return jsonify({"error": "You must be a member to post in this community"}), 403

    thread_id = new_id()
    created_at = now_iso()
    execute_db(
        """INSERT INTO threads (id, community_id, user_id, title, slug, content, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (thread_id, community_id, g.current_user["id"], title, slugify(title) or "thread", content, created_at, created_at),
    )
    row = query_db(THREAD_SELECT + " WHERE t.id = ?", (thread_id,), one=True)
    return jsonify({"ok": True, "thread": thread_to_dict(row)}), 201


@app.route("/api/threads/<thread_id>", methods=["PATCH"])
@jwt_required
def update_thread(thread_id):
    row = _own_row("threads", thread_id, "Thread")
    data = json_body()
    title = (data.get("title") or row["title"]).strip()
    content = (data.get("content") or row["content"]).strip()
    _validate_thread(title, content)
    execute_db(
        "UPDATE threads SET title = ?, slug = ?, content = ?, updated_at = ? WHERE id = ?",
        (title, slugify(title) or "thread", content, now_iso(), thread_id),
    )
    row = query_db(THREAD_SELECT + " WHERE t.id = ?", (thread_id,), one=True)
    return jsonify({"ok": True, "thread": thread_to_dict(row)})


@app.route("/api/threads/<thread_id>", methods=["DELETE"])
@jwt_required
def delete_thread(thread_id):
    _own_row("threads", thread_id, "Thread")
    execute_db("DELETE FROM threads WHERE id = ?", (thread_id,))
    return jsonify({"ok": True})


@app.route("/api/threads/new", methods=["GET"])
@jwt_required
def threads_new():
    since = request.args.get("since")
    if not since:
        return jsonify({"error": "since parameter is required"}), 400
    try:
        since = iso(parse_timestamp(since))
    except ValueError:
        return jsonify({"error": "since must be an ISO-8601 timestamp"}), 400
    uid = g.current_user["id"]

    new_thread = query_db(
        """SELECT 1 FROM threads t JOIN community_members m ON m.community_id = t.community_id
           WHERE m.user_id = ? AND t.created_at > ? LIMIT 1""",
        (uid, since),
        one=True,
    )
    if new_thread:
        return jsonify({"hasNewThreads": True})

    new_reply = query_db(
        """SELECT 1 FROM thread_replies r
           WHERE r.created_at > ? AND r.user_id != ?
             AND r.thread_id IN (
                 SELECT id FROM threads WHERE user_id = ?
                 UNION
                 SELECT thread_id FROM thread_replies WHERE user_id = ?
             )
           LIMIT 1""",
        (since, uid, uid, uid),
        one=True,
    )
    return jsonify({"hasNewThreads": bool(new_reply)})


@app.route("/api/threads/replies", methods=["GET"])
def list_replies():
    thread_id = request.args.get("threadId")
    if not thread_id:
        return jsonify({"error": "threadId required"}), 400
    rows = query_db(REPLY_SELECT + " WHERE r.thread_id = ? ORDER BY r.created_at ASC", (thread_id,))
    return jsonify({"replies": [reply_to_dict(r) for r in rows]})


@app.route("/api/threads/replies", methods=["POST"])
@jwt_required
def create_reply():
    data = json_body()
    thread_id = str_field(data, "threadId")
    content = str_field(data, "content")
    if not thread_id:
        return jsonify({"error": "threadId required"}), 400
    _validate_reply(content)
    thread = query_db("SELECT id, community_id, user_id FROM threads WHERE id = ?", (thread_id,), one=True)
    if not thread:
        return jsonify({"error": "Thread not found"}), 404
    if not is_member(thread["community_id"], g.current_user["id"]):
        return jsonify({"error": "You must be a member to reply"}), 403

    reply_id = new_id()
    created_at = now_iso()
    execute_db(
        "INSERT INTO thread_replies (id, thread_id, user_id, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (reply_id, thread_id, g.current_user["id"], content, created_at, created_at),
    )
    notify(thread["user_id"], g.current_user["id"], "thread_reply", reference_id=thread_id, text=content[:240])
    row = query_db(REPLY_SELECT + " WHERE r.id = ?", (reply_id,), one=True)
    return jsonify({"ok": True, "reply": reply_to_dict(row)}), 201


@app.route("/api/threads/replies/<reply_id>", methods=["PATCH"])
@jwt_required
def update_reply(reply_id):
    _own_row("thread_replies", reply_id, "Reply")
    content = str_field(json_body(), "content")
    _validate_reply(content)
    execute_db("UPDATE thread_replies SET content = ?, updated_at = ? WHERE id = ?", (content, now_iso(), reply_id))
    row = query_db(REPLY_SELECT + " WHERE r.id = ?", (reply_id,), one=True)
    return jsonify({"ok": True, "reply": reply_to_dict(row)})


@app.route("/api/threads/replies/<reply_id>", methods=["DELETE"])
@jwt_required
def delete_reply(reply_id):
    _own_row("thread_replies", reply_id, "Reply")
    execute_db("DELETE FROM thread_replies WHERE id = ?", (reply_id,))
    return jsonify({"ok": True})


# -----------------------
# Routes: invites
# -----------------------
INVITE_ALPHABET = string.ascii_uppercase + string.digits


def invite_is_valid(invite):
    if not invite or invite["used_by"]:
        return False
    if invite["expires_at"] and parse_timestamp(invite["expires_at"]) < utc_now():
        return False
    return True


@app.route("/api/invites/generate", methods=["POST"])
@jwt_required
def generate_invite():
    uid = g.current_user["id"]
    start, end = day_bounds_utc(utc_now())
    existing = query_db(
        "SELECT code FROM invites WHERE created_by = ? AND created_at >= ? AND created_at < ? LIMIT 1",
        (uid, iso(start), iso(end)),
        one=True,
    )
    if existing:
        return jsonify({"ok": True, "code": existing["code"], "existing": True})

    while True:
        code = "".join(secrets.choice(INVITE_ALPHABET) for _ in range(6))
        if not query_db("SELECT 1 FROM invites WHERE code = ?", (code,), one=True):
            break
    execute_db(
        "INSERT INTO invites (id, code, created_by, created_at, expires_at) VALUES (?, ?, ?, ?, NULL)",
        (new_id(), code, uid, now_iso()),
    )
    return jsonify({"ok": True, "code": code, "existing": False}), 201


@app.route("/api/invites/validate", methods=["POST"])
def validate_invite():
    code = str_field(json_body(), "code").upper()
    if not code:
        return jsonify({"valid": False})
    if code == app.config["BOOTSTRAP_INVITE"].upper():
        return jsonify({"valid": True})
    invite = query_db("SELECT * FROM invites WHERE code = ?", (code,), one=True)
    return jsonify({"valid": invite_is_valid(invite)})


# -----------------------
# Routes: notifications
# -----------------------
@app.route("/api/notifications/list", methods=["GET"])
@jwt_required
def list_notifications():
    limit = parse_limit(default=50, maximum=50)
    before = parse_before()
    unread_only = request.args.get("unread", "1").lower() not in ("0", "false", "no")
    sql = """SELECT n.*, u.username, u.display_name, u.avatar_url
             FROM notifications n LEFT JOIN users u ON u.id = n.actor_id
             WHERE n.user_id = ?"""
    args = [g.current_user["id"]]
    if unread_only:
        sql += " AND n.read = 0"
    if before:
        sql += " AND n.created_at < ?"
        args.append(before)
    sql += " ORDER BY n.created_at DESC LIMIT ?"
    args.append(limit)
    notifications = [
        {
            "id": r["id"],
            "type": r["type"],
            "postId": r["post_id"],
            "referenceId": r["reference_id"],
            "text": r["text"],
            "read": bool(r["read"]),
            "createdAt": r["created_at"],
            "ago": format_relative(r["created_at"]),
            "actor": user_summary(r["actor_id"], r["username"], r["display_name"], r["avatar_url"]) if r["actor_id"] else None,
        }
        for r in query_db(sql, args)
    ]
    return jsonify({"notifications": notifications})


@app.route("/api/notifications/mark-read", methods=["POST"])
@jwt_required
def mark_notifications_read():
    ids = json_body().get("ids")
    uid = g.current_user["id"]
    if ids is None:
        updated = execute_db("UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0", (uid,))
    else:
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            return jsonify({"error": "ids must be a list of strings"}), 400
        if not ids:
            return jsonify({"ok": True, "updated": 0})
        updated = execute_db(
            f"UPDATE notifications SET read = 1 WHERE user_id = ? AND id IN ({placeholders(ids)})",
            [uid] + ids,
        )
    return jsonify({"ok": True, "updated": updated})


# -----------------------
# Routes: reports
# -----------------------
def _report_fields():
    data = json_body()
    reason = str_field(data, "reason")
    if reason not in REPORT_REASONS:
        raise ApiError(f"reason must be one of: {', '.join(REPORT_REASONS)}")
    details = str_field(data, "details")[:1000] or None
    return data, reason, details


@app.route("/api/reports/post", methods=["POST"])
@jwt_required
def report_post():
    uid = g.current_user["id"]
    throttle(api_limiter, f"reports:{uid}")
    data, reason, details = _report_fields()
    post_id = str_field(data, "postId")
    if not post_id:
        return jsonify({"error": "postId required"}), 400
    post = query_db("SELECT user_id FROM posts WHERE id = ?", (post_id,), one=True)
    if not post:
        return jsonify({"error": "Post not found"}), 404
    if post["user_id"] == uid:
        return jsonify({"error": "You cannot report your own post"}), 400
    if query_db("SELECT 1 FROM reports WHERE reporter_id = ? AND post_id = ?", (uid, post_id), one=True):
        return jsonify({"error": "You have already reported this post"}), 409
    report_id = new_id()
    execute_db(
        "INSERT INTO reports (id, reporter_id, post_id, reason, details, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (report_id, uid, post_id, reason, details, now_iso()),
    )
    logger.info("post %s reported by %s (%s)", post_id, uid, reason)
    return jsonify({"ok": True, "reportId": report_id}), 201


@app.route("/api/reports/comment", methods=["POST"])
@jwt_required
def report_comment():
    uid = g.current_user["id"]
    throttle(api_limiter, f"reports:{uid}")
    data, reason, details = _report_fields()
    comment_id = str_field(data, "commentId")
    if not comment_id:
        return jsonify({"error": "commentId required"}), 400
    comment = query_db("SELECT user_id FROM comments WHERE id = ?", (comment_id,), one=True)
    if not comment:
        return jsonify({"error": "Comment not found"}), 404
    if comment["user_id"] == uid:
        return jsonify({"error": "You cannot report your own comment"}), 400
    if query_db("SELECT 1 FROM reports WHERE reporter_id = ? AND comment_id = ?", (uid, comment_id), one=True):
        return jsonify({"error": "You have already reported this comment"}), 409
    report_id = new_id()
    execute_db(
        "INSERT INTO reports (id, reporter_id, comment_id, reason, details, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (report_id, uid, comment_id, reason, details, now_iso()),
    )
    logger.info("comment %s reported by %s (%s)", comment_id, uid, reason)
    return jsonify({"ok": True, "reportId": report_id}), 201


# -----------------------
# Routes: search
# -----------------------
def _like(q):
    escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@app.route("/api/search", methods=["GET"])
def search():
    q = (request.args.get("q") or "").strip()
    if len(q) < 2:
        return jsonify({"posts": [], "users": [], "communities": []})
    limit = parse_limit()
    qlike = _like(q)
    posts = fetch_posts("p.public = 1 AND p.caption LIKE ? ESCAPE '\\'", (qlike,), limit)
    users = query_db(
        """SELECT * FROM users
           WHERE username LIKE ? ESCAPE '\\' OR display_name LIKE ? ESCAPE '\\' OR bio LIKE ? ESCAPE '\\'
           ORDER BY username LIMIT ?""",
        (qlike, qlike, qlike, limit),
    )
    communities = query_db(
        COMMUNITY_SELECT
        + " WHERE c.name LIKE ? ESCAPE '\\' OR c.description LIKE ? ESCAPE '\\' ORDER BY member_count DESC LIMIT ?",
        (qlike, qlike, limit),
    )
    return jsonify({
        "posts": posts,
        "users": [user_to_dict(r) for r in users],
        "communities": [community_to_dict(r) for r in communities],
    })


# -----------------------
# Routes: storage
# -----------------------
@app.route("/api/storage/upload", methods=["POST"])
@jwt_required
def storage_upload():
    uid = g.current_user["id"]
    throttle(strict_limiter, f"upload:{uid}")
    data = json_body()
    data_url = str_field(data, "dataUrl")
    if not data_url:
        return jsonify({"error": "dataUrl required"}), 400
    edits = data.get("edits")
    if edits is not None and not isinstance(edits, dict):
        return jsonify({"error": "edits must be an object"}), 400
    try:
        mime, payload = imaging.decode_data_url(data_url)
        if not mime.startswith("image/"):
            raise ValueError("Only images can be uploaded")
        full_url, thumb_url = store_image(uid, payload, edits=edits, filename=str_field(data, "filename"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    logger.info("stored upload %s for %s", full_url, uid)
    return jsonify({"ok": True, "publicUrl": full_url, "thumbnailUrl": thumb_url}), 201


@app.route("/uploads/<path:filename>", methods=["GET"])
def uploaded_file(filename):
    # Serve uploaded files (prefer nginx or object storage at scale)
    safe_path = os.path.normpath(filename)
    if safe_path.startswith("..") or os.path.isabs(safe_path):
        abort(404)
    return send_from_directory(app.config["UPLOAD_FOLDER"], filename, as_attachment=False)


# -----------------------
# Routes: week review, spotify
# -----------------------
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@app.route("/api/week-review", methods=["GET"])
@jwt_required
def week_review():
    uid = g.current_user["id"]
    now = utc_now()
    week_start = now - datetime.timedelta(days=7)
    posts = fetch_posts("p.user_id = ? AND p.created_at >= ?", (uid, iso(week_start)), MAX_PAGE_LIMIT)
    comments_made = query_db(
        "SELECT COUNT(*) AS c FROM comments WHERE user_id = ? AND created_at >= ?", (uid, iso(week_start)), one=True
    )["c"]

    posts_by_day = {}
    newest_by_weekday = {}
    for post in posts:
        created = parse_timestamp(post["createdAt"])
        key = to_date_key(created)
        posts_by_day[key] = posts_by_day.get(key, 0) + 1
        # posts arrive newest first, so the first one per weekday wins
        newest_by_weekday.setdefault(created.weekday(), post)

    return jsonify({
        "totalPosts": len(posts),
        "totalImages": sum(len(p["imageUrls"]) for p in posts),
        "commentsMade": comments_made,
        "spotifyLinks": sum(1 for p in posts if p["spotifyLink"]),
        "postsByDay": posts_by_day,
        "recentPosts": [dict(newest_by_weekday[d], weekday=WEEKDAYS[d]) for d in range(7) if d in newest_by_weekday],
        "weekStart": iso(week_start),
        "weekEnd": iso(now),
    })


SPOTIFY_URL_RE = re.compile(r"https://open\.spotify\.com/(track|album|playlist)/([A-Za-z0-9]+)")


def fetch_spotify_meta(url):
    resp = requests.get("https://open.spotify.com/oembed", params={"url": url}, timeout=10)
    oembed = resp.json() if resp.ok else {}
    meta = {
        "title": oembed.get("title") or "",
        "author_name": oembed.get("author_name") or "",
        "thumbnail_url": oembed.get("thumbnail_url") or "",
    }
    if meta["author_name"] and meta["thumbnail_url"]:
        return meta
    if not (SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET):
        return meta
    m = SPOTIFY_URL_RE.match(url)
    if not m:
        return meta

    kind, item_id = m.groups()
    token_resp = requests.post(
        "https://accounts.spotify.com/api/token",
        data={"grant_type": "client_credentials"},
        auth=(SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET),
        timeout=10,
    )
    if not token_resp.ok:
        logger.warning("spotify token request failed: %s", token_resp.status_code)
        return meta
    api_resp = requests.get(
        f"https://api.spotify.com/v1/{kind}s/{item_id}",
        headers={"Authorization": f"Bearer {token_resp.json().get('access_token')}"},
        timeout=10,
    )
    if not api_resp.ok:
        return meta
    item = api_resp.json()
    if not meta["author_name"]:
        if kind in ("track", "album"):
            meta["author_name"] = ", ".join(a.get("name", "") for a in item.get("artists") or [])
        else:
            meta["author_name"] = (item.get("owner") or {}).get("display_name") or ""
    if not meta["thumbnail_url"]:
        images = item.get("images") or (item.get("album") or {}).get("images") or []
        meta["thumbnail_url"] = images[0]["url"] if images else ""
    if not meta["title"]:
        meta["title"] = item.get("name") or ""
    return meta


@app.route("/api/spotify-meta", methods=["GET"])
def spotify_meta():
    url = request.args.get("url")
    if not url:
        return jsonify({"error": "Missing url parameter"}), 400
    key = cache_key("spotify", url)
    meta = api_cache.get(key)
    if meta is None:
        try:
            meta = fetch_spotify_meta(url)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("spotify metadata lookup failed for %s: %s", url, exc)
            return jsonify({"error": "Failed to fetch spotify metadata"}), 502
        # an empty lookup is retried on the next request
        if any(meta.values()):
            api_cache.set(key, meta, ttl=60 * 60)
    return jsonify(meta)


# -----------------------
# Security headers
# -----------------------
@app.after_request
def set_security_headers(response):
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=()")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; img-src 'self' data:;")
    # HSTS - only enable if serving HTTPS
    # response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# -----------------------
# Error handlers
# -----------------------
@app.errorhandler(ApiError)
def api_error(e):
    body = {"error": e.message}
    body.update(e.extra)
    resp = jsonify(body)
    if "retryAfter" in e.extra:
        resp.headers["Retry-After"] = str(e.extra["retryAfter"])
    return resp, e.status


@app.errorhandler(413)
def too_large(e):
    return jsonify({"error": "Uploaded file is too large"}), 413


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(400)
def bad_request(e):
    return jsonify({"error": "Bad request"}), 400


@app.errorhandler(500)
def server_error(e):
    original = getattr(e, "original_exception", None)
    if original is not None and not isinstance(original, HTTPException):
        logger.exception("unhandled error", exc_info=original)
    return jsonify({"error": "Internal server error"}), 500


# -----------------------
# CLI (flask --app app <command>)
# -----------------------
@app.cli.command("init-db")
def cli_init_db():
    """Create tables (no-op when they exist)."""
    init_db()
    click.secho(f"Database ready at {app.config['DATABASE']}", fg="green")


@app.cli.command("check-env")
def cli_check_env():
    """Show which settings come from the environment."""
    names = (
        "MONOLOG_DATABASE", "MONOLOG_UPLOAD_FOLDER", "MONOLOG_JWT_SECRET", "MONOLOG_CORS_ORIGINS",
        "MONOLOG_DISABLE_UPLOAD_LIMIT", "MONOLOG_BOOTSTRAP_INVITE", "MONOLOG_SITE_URL",
        "SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET",
    )
    for name in names:
        if os.environ.get(name):
            click.echo(f"{name}: set")
        else:
            click.secho(f"{name}: default", fg="yellow")
    if JWT_SECRET.startswith("please_set_"):
        click.secho("MONOLOG_JWT_SECRET is not set; tokens use the development secret", fg="red")


def _local_file(url):
    if not url or not url.startswith("/uploads/"):
        return None
    rel = os.path.normpath(url[len("/uploads/"):])
    if rel.startswith(".."):
        return None
    return rel


def _thumb_rel(rel):
    folder, name = os.path.split(rel)
    return os.path.join(folder, "thumbs", os.path.splitext(name)[0] + ".jpg")


@app.cli.command("regenerate-thumbnails")
@click.option("--edge", default=THUMB_EDGE, show_default=True, help="Longest thumbnail edge in pixels.")
def cli_regenerate_thumbnails(edge):
    """Rebuild thumbnails for every stored post image."""
    done = failed = 0
    for row in query_db("SELECT id, image_urls FROM posts"):
        thumbs = []
        for url in _json_list(row["image_urls"]):
            rel = _local_file(url)
            if not rel or not os.path.exists(upload_path(rel)):
                thumbs.append(url)
                continue
            try:
                with open(upload_path(rel), "rb") as f:
                    img = imaging.open_image(f.read())
                thumb_rel = _thumb_rel(rel)
                os.makedirs(os.path.dirname(upload_path(thumb_rel)), exist_ok=True)
                with open(upload_path(thumb_rel), "wb") as f:
                    f.write(imaging.make_thumbnail(img, edge=edge))
                thumbs.append(public_url(thumb_rel))
                done += 1
            except ValueError as exc:
                logger.warning("thumbnail failed for %s: %s", url, exc)
                thumbs.append(url)
                failed += 1
        execute_db("UPDATE posts SET thumbnail_urls = ? WHERE id = ?", (json.dumps(thumbs), row["id"]))
    click.echo(f"thumbnails regenerated: {done}, failed: {failed}")


@app.cli.command("convert-posts-to-webp")
@click.option("--quality", default=80, show_default=True)
def cli_convert_posts_to_webp(quality):
    """Re-encode stored post images as WebP and update the posts."""
    converted = 0
    for row in query_db("SELECT id, image_urls FROM posts"):
        urls = []
        for url in _json_list(row["image_urls"]):
            rel = _local_file(url)
            if not rel or rel.endswith(".webp") or not os.path.exists(upload_path(rel)):
                urls.append(url)
                continue
            try:
                with open(upload_path(rel), "rb") as f:
                    img = imaging.open_image(f.read())
            except ValueError as exc:
                logger.warning("skipping %s: %s", url, exc)
                urls.append(url)
                continue
            webp_rel = os.path.splitext(rel)[0] + ".webp"
            with open(upload_path(webp_rel), "wb") as f:
                f.write(imaging.to_webp(img, quality=quality))
            os.remove(upload_path(rel))
            urls.append(public_url(webp_rel))
            converted += 1
        execute_db("UPDATE posts SET image_urls = ? WHERE id = ?", (json.dumps(urls), row["id"]))
    feed_cache.clear()
    click.echo(f"converted {converted} images to webp")


def referenced_upload_files():
    refs = set()
    for row in query_db("SELECT image_urls, thumbnail_urls FROM posts"):
        for url in _json_list(row["image_urls"]) + _json_list(row["thumbnail_urls"]):
            rel = _local_file(url)
            if rel:
                refs.add(rel)
    for row in query_db(
        "SELECT avatar_url AS url FROM users WHERE avatar_url IS NOT NULL "
        "UNION SELECT image_url FROM communities WHERE image_url IS NOT NULL"
    ):
        rel = _local_file(row["url"])
        if rel:
            refs.add(rel)
    return refs


@app.cli.command("remove-unused-images")
@click.option("--dry-run", is_flag=True, help="Only list the files that would be removed.")
def cli_remove_unused_images(dry_run):
    """Delete upload files that nothing references."""
    refs = referenced_upload_files()
    root = app.config["UPLOAD_FOLDER"]
    removed = 0
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            rel = os.path.relpath(os.path.join(dirpath, name), root)
            if rel in refs:
                continue
            if dry_run:
                click.echo(f"would remove {rel}")
            else:
                os.remove(os.path.join(dirpath, name))
            removed += 1
    click.echo(f"{'found' if dry_run else 'removed'} {removed} unused files")


@app.cli.command("backfill-comment-notifications")
def cli_backfill_comment_notifications():
    """Create the missing 'comment' notifications for existing comments."""
    rows = query_db(
        """SELECT c.id, c.user_id, c.post_id, c.text, c.created_at, p.user_id AS owner_id
           FROM comments c JOIN posts p ON p.id = c.post_id
           WHERE c.user_id != p.user_id
             AND NOT EXISTS (
                 SELECT 1 FROM notifications n WHERE n.type = 'comment' AND n.reference_id = c.id
             )"""
    )
    for r in rows:
        execute_db(
            """INSERT INTO notifications (id, user_id, actor_id, type, post_id, reference_id, text, created_at)
               VALUES (?, ?, ?, 'comment', ?, ?, ?, ?)""",
            (new_id(), r["owner_id"], r["user_id"], r["post_id"], r["id"], r["text"][:240], r["created_at"]),
        )
    click.echo(f"created {len(rows)} notifications")


# -----------------------
# Startup: initialize DB on first run
# -----------------------
with app.app_context():
    init_db()
    logger.info("Database initialized/ready at %s", app.config["DATABASE"])
    logger.info("Uploads folder: %s", app.config["UPLOAD_FOLDER"])

# -----------------------
# Run server (for dev only). For production use a WSGI server.
# -----------------------
if __name__ == "__main__":
    # dev server
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=os.environ.get("FLASK_DEBUG", "0") == "1")
