"""
SQLite database service.

Handles persistent storage for:
- Users (upstream credential and access token)
- Playlist metadata cache
- Play log
"""
import os
import json
import time
import sqlite3
import logging
import aiosqlite
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from core.config import DB_FILE, PLAYLIST_CACHE_TTL_SECONDS
from services.music_api import Playlist

logger = logging.getLogger(__name__)

db_dir = os.path.dirname(DB_FILE)
if db_dir and not os.path.exists(db_dir):
    os.makedirs(db_dir, exist_ok=True)


def get_db_connection() -> sqlite3.Connection:
    """Get a synchronous database connection (for init/migration)."""
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn


@asynccontextmanager
async def get_async_db():
    """Get an async database connection."""
    db = await aiosqlite.connect(DB_FILE)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


def init_database():
    """Initialize database schema and run migrations."""
    conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at REAL
        )
    """)

    cursor.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    current_version = row[0] if row and row[0] else 0

    migrations = [
        # Version 1: Users
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            netease_id TEXT UNIQUE NOT NULL,
            nickname TEXT,
            cookie TEXT NOT NULL,
            token TEXT UNIQUE NOT NULL,
            created_at REAL,
            last_login REAL
        )
        """,
        # Version 2: Playlist cache
        """
        CREATE TABLE IF NOT EXISTS playlists (
            playlist_id TEXT PRIMARY KEY,
            name TEXT,
            cover TEXT,
            song_count INTEGER,
            songs TEXT,
            cached_at REAL,
            expires_at REAL
        )
        """,
        # Version 3: Play log
        """
        CREATE TABLE IF NOT EXISTS play_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            playlist_id TEXT,
            song_id TEXT,
            song_name TEXT,
            artist TEXT,
            played_at REAL
        )
        """,
        # Version 4: Index for per-user history
        """
        CREATE INDEX IF NOT EXISTS idx_play_logs_user ON play_logs(user_id, played_at)
        """,
    ]

    now = time.time()

    for i, migration_sql in enumerate(migrations, start=1):
        if i > current_version:
            logger.info(f"Running database migration v{i}...")
            cursor.execute(migration_sql)
            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (i, now)
            )
            conn.commit()
            logger.info(f"Migration v{i} complete")

    conn.close()

    logger.info(f"Database initialized: {DB_FILE} (schema v{len(migrations)})")


# ============================================================================
# User Operations
# ============================================================================

async def save_user(netease_id: str, cookie: str, token: str, nickname: str = "") -> None:
    """Insert or refresh a user record."""
    now = time.time()
    async with get_async_db() as db:
        await db.execute("""
            INSERT INTO users (netease_id, nickname, cookie, token, created_at, last_login)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(netease_id) DO UPDATE SET
                nickname = excluded.nickname,
                cookie = excluded.cookie,
                token = excluded.token,
                last_login = excluded.last_login
        """, (netease_id, nickname, cookie, token, now, now))
        await db.commit()


async def get_user_by_token(token: str) -> Optional[Dict[str, Any]]:
    """Get user by access token."""
    async with get_async_db() as db:
        cursor = await db.execute("SELECT * FROM users WHERE token = ?", (token,))
        row = await cursor.fetchone()

        if not row:
            return None

        return {
            "id": row["id"],
            "netease_id": row["netease_id"],
            "nickname": row["nickname"],
            "cookie": row["cookie"],
            "token": row["token"],
        }


# ============================================================================
# Playlist Cache Operations
# ============================================================================

async def get_cached_playlist(playlist_id: str) -> Optional[Playlist]:
    """Get cached playlist if available and not expired."""
    now = time.time()

    async with get_async_db() as db:
        cursor = await db.execute(
            "SELECT * FROM playlists WHERE playlist_id = ?", (playlist_id,)
        )
        row = await cursor.fetchone()

    if not row:
        return None

    if row["expires_at"] and now > row["expires_at"]:
        return None

    try:
        tracks = json.loads(row["songs"] or "[]")
        return Playlist(id=playlist_id, name=row["name"] or "", cover=row["cover"], tracks=tracks)
    except ValueError as e:
        logger.warning(f"Corrupt playlist cache for {playlist_id}: {e}")
        return None


async def cache_playlist(playlist: Playlist, ttl_seconds: int = None) -> None:
    """Cache playlist metadata with TTL."""
    if ttl_seconds is None:
        ttl_seconds = PLAYLIST_CACHE_TTL_SECONDS
    now = time.time()
    songs = json.dumps([track.model_dump() for track in playlist.tracks])

    async with get_async_db() as db:
        await db.execute("""
            INSERT INTO playlists (playlist_id, name, cover, song_count, songs, cached_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(playlist_id) DO UPDATE SET
                name = excluded.name,
                cover = excluded.cover,
                song_count = excluded.song_count,
                songs = excluded.songs,
                cached_at = excluded.cached_at,
                expires_at = excluded.expires_at
        """, (playlist.id, playlist.name, playlist.cover, len(playlist.tracks), songs, now, now + ttl_seconds))
        await db.commit()

    logger.debug(f"Cached playlist {playlist.id} ({len(playlist.tracks)} tracks, expires in {ttl_seconds}s)")


async def clear_expired_playlists() -> int:
    """Delete expired playlist cache rows. Returns rows removed."""
    async with get_async_db() as db:
        cursor = await db.execute("DELETE FROM playlists WHERE expires_at <= ?", (time.time(),))
        await db.commit()
        removed = cursor.rowcount

    if removed:
        logger.info(f"Removed {removed} expired playlist cache entries")
    return removed


# ============================================================================
# Play Log
# ============================================================================

async def log_play(user_id: int, playlist_id: str, track_id: str, track_name: str = "", artist: str = "") -> None:
    """Record that a user started a track."""
    async with get_async_db() as db:
        await db.execute(
            """INSERT INTO play_logs (user_id, playlist_id, song_id, song_name, artist, played_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, playlist_id, track_id, track_name, artist, time.time())
        )
        await db.commit()

