import os
import sqlite3
import asyncio
import discord
from discord.ext import commands
from openai import OpenAI
from config.defaults import AI_MAX_TOKENS
from config.defaults import AI_RETRY_ATTEMPTS
from config.defaults import AI_RETRY_BACKOFF_SECONDS
from config.defaults import AI_TEMPERATURE
from config.defaults import DEFAULT_AI_MODEL
from config.defaults import DEFAULT_ALLOWED_CHANNEL_IDS
from config.defaults import DEFAULT_CLEANUP_INTERVAL_SECONDS
from config.defaults import DEFAULT_COMMAND_PREFIX
from config.defaults import DEFAULT_SESSION_TTL_HOURS
from config.defaults import DISCORD_MAX_MESSAGE_LEN
from config.defaults import OPENROUTER_BASE_URL
from config.defaults import PROCESSING_LOCK_STALE_SECONDS
from config.defaults import WORK_COOLDOWN_MINUTES
from config.env import env_float
from config.env import env_int
from config.env import parse_id_set
from config.env import resolve_allowed_channel_ids
from db.migrate import apply_sqlite_migrations
from db.migrate import default_migrations_dir
from db.migrate import list_schema_migrations_sync
from generation.dna import StoryWordBank
from generation.dna import default_data_dir
from generation.service import IncrementalStoryGenerator
from jobs.cleanup import session_cleanup_loop as session_cleanup_loop_service
from misc.runtime_wiring import wire_bot_runtime
from rewards.service import RewardLedger
from rewards.service import utc_iso
from sessions.service import StorySessionManager
from story.catalog import default_catalog_dir
from story.catalog import register_catalog
from story.engine import StoryEngine
from story.registry import StoryRegistry
from work.service import WorkService

# =========================
# ENV
# =========================
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
OPENROUTER_API_KEY = (os.getenv("OPENROUTER_API_KEY") or "").strip()

if not DISCORD_TOKEN:
    raise RuntimeError("Missing DISCORD_TOKEN env var")

STORY_AI_MODEL = os.getenv("STORY_AI_MODEL", DEFAULT_AI_MODEL).strip() or DEFAULT_AI_MODEL
STORY_AI_TEMPERATURE = env_float("STORY_AI_TEMPERATURE", AI_TEMPERATURE)
STORY_AI_MAX_TOKENS = env_int("STORY_AI_MAX_TOKENS", AI_MAX_TOKENS)

# Persistent path (point this at a mounted volume in production)
DB_PATH = os.getenv("STORY_DB_PATH", "storyline.db")
CATALOG_DIR = os.getenv("STORY_CATALOG_DIR", default_catalog_dir()).strip() or default_catalog_dir()
DATA_DIR = os.getenv("STORY_DATA_DIR", default_data_dir()).strip() or default_data_dir()

SESSION_TTL_HOURS = env_float("STORY_SESSION_TTL_HOURS", DEFAULT_SESSION_TTL_HOURS)
CLEANUP_INTERVAL_SECONDS = env_int("STORY_CLEANUP_INTERVAL_SECONDS", DEFAULT_CLEANUP_INTERVAL_SECONDS)
LOCK_STALE_SECONDS = env_int("STORY_PROCESSING_LOCK_STALE_SECONDS", PROCESSING_LOCK_STALE_SECONDS)
WORK_COOLDOWN = env_int("STORY_WORK_COOLDOWN_MINUTES", WORK_COOLDOWN_MINUTES)
COMMAND_PREFIX = os.getenv("STORY_COMMAND_PREFIX", DEFAULT_COMMAND_PREFIX).strip() or DEFAULT_COMMAND_PREFIX

ALLOWED_CHANNEL_IDS = resolve_allowed_channel_ids(DEFAULT_ALLOWED_CHANNEL_IDS)
OWNER_USER_IDS = parse_id_set(os.getenv("STORY_OWNER_USER_IDS"))

print(
    f"[CFG] model={STORY_AI_MODEL} ai_enabled={bool(OPENROUTER_API_KEY)} "
    f"ttl_hours={SESSION_TTL_HOURS} cleanup_every={CLEANUP_INTERVAL_SECONDS}s "
    f"channels={'(all)' if not ALLOWED_CHANNEL_IDS else len(ALLOWED_CHANNEL_IDS)} owners={len(OWNER_USER_IDS)}"
)

# AI stories are optional; without a key only the static catalog is used.
client = OpenAI(api_key=OPENROUTER_API_KEY, base_url=OPENROUTER_BASE_URL) if OPENROUTER_API_KEY else None


def chunk_text(text: str, limit: int = DISCORD_MAX_MESSAGE_LEN) -> list[str]:
    text = text or ""
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text

    while len(remaining) > limit:
        # Prefer splitting on paragraph, then newline, then space
        split_at = remaining.rfind("\n\n", 0, limit)
        if split_at == -1:
            split_at = remaining.rfind("\n", 0, limit)
        if split_at == -1:
            split_at = remaining.rfind(" ", 0, limit)
        if split_at == -1:
            split_at = limit

        chunk = remaining[:split_at].strip()
        if chunk:
            chunks.append(chunk)

        remaining = remaining[split_at:].strip()

    if remaining:
        chunks.append(remaining)

    return chunks


async def send_chunked(channel: discord.abc.Messageable, text: str) -> None:
    for part in chunk_text(text, DISCORD_MAX_MESSAGE_LEN):
        await channel.send(part)


def _safe_table_info(cur, table: str):
    try:
        cur.execute(f"PRAGMA table_info({table})")
        return [r[1] for r in cur.fetchall()]
    except Exception as e:
        return [f"<error: {e}>"]


def _schema_has_columns(cur, table: str, required: list[str]) -> tuple[bool, list[str]]:
    cols = set(_safe_table_info(cur, table))
    missing = [c for c in required if c not in cols]
    return (len(missing) == 0, missing)


# =========================
# SQLITE
# =========================
def init_db(db_path: str) -> sqlite3.Connection:
    # check_same_thread=False because discord.py event loop + to_thread usage
    conn = sqlite3.connect(db_path, check_same_thread=False)
    cur = conn.cursor()

    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    applied = apply_sqlite_migrations(conn, default_migrations_dir())
    if applied:
        print(f"[DB] Applied migrations: {', '.join(applied)}")

    required = [
        (
            "story_sessions",
            [
                "session_id",
                "discord_user_id",
                "story_id",
                "current_node_id",
                "story_journal_json",
                "resolved_node_values_json",
                "is_processing",
                "processing_started_at_ms",
                "ai_context_json",
            ],
        ),
        ("dynamic_stories", ["story_id", "payload_json"]),
        ("user_stats", ["user_id", "coins", "xp", "last_work_at_utc"]),
        ("reward_ledger", ["user_id", "coins", "xp", "activity_type"]),
        ("work_settings", ["guild_id", "story_chance_percent", "ai_story_enabled"]),
    ]
    for tbl, cols in required:
        ok_t, missing_t = _schema_has_columns(cur, tbl, cols)
        print(f"[DB] {tbl} schema OK={ok_t} missing={missing_t}")

    conn.commit()
    return conn


db_conn = init_db(DB_PATH)
print(f"[DB] Using DB_PATH={DB_PATH}")
db_lock = asyncio.Lock()


def user_is_owner(user: discord.abc.User) -> bool:
    uid = int(getattr(user, "id", 0) or 0)
    return bool(uid and uid in OWNER_USER_IDS)


# =========================
# STORY RUNTIME
# =========================
registry = StoryRegistry()
story_count = register_catalog(registry, CATALOG_DIR)
print(f"[StoryEngine] Loaded {story_count} stories from {CATALOG_DIR}")

rewards = RewardLedger(db_lock=db_lock, db_conn=db_conn, utc_iso=utc_iso)

generator = IncrementalStoryGenerator(
    client=client,
    model=STORY_AI_MODEL,
    temperature=STORY_AI_TEMPERATURE,
    max_tokens=STORY_AI_MAX_TOKENS,
    retry_attempts=AI_RETRY_ATTEMPTS,
    retry_backoff_seconds=AI_RETRY_BACKOFF_SECONDS,
    word_bank=StoryWordBank(DATA_DIR),
)


async def release_stories(story_ids: list[str]) -> None:
    await engine.release_stories(story_ids)


sessions = StorySessionManager(
    db_lock=db_lock,
    db_conn=db_conn,
    ttl_hours=SESSION_TTL_HOURS,
    stale_lock_seconds=LOCK_STALE_SECONDS,
    on_released=release_stories,
)

engine = StoryEngine(
    registry=registry,
    sessions=sessions,
    rewards=rewards,
    generator=generator,
    db_lock=db_lock,
    db_conn=db_conn,
)

work_service = WorkService(
    db_lock=db_lock,
    db_conn=db_conn,
    rewards=rewards,
    engine=engine,
    cooldown_minutes=WORK_COOLDOWN,
    utc_iso=utc_iso,
)


async def session_cleanup_loop() -> None:
    return await session_cleanup_loop_service(
        session_manager=sessions,
        interval_seconds=CLEANUP_INTERVAL_SECONDS,
    )


# =========================
# DISCORD BOT
# =========================
intents = discord.Intents.default()
intents.message_content = True

bot = commands.Bot(command_prefix=COMMAND_PREFIX, intents=intents)

wire_bot_runtime(
    bot,
    allowed_channel_ids=ALLOWED_CHANNEL_IDS,
    user_is_owner=user_is_owner,
    db_lock=db_lock,
    db_conn=db_conn,
    send_chunked=send_chunked,
    engine=engine,
    sessions=sessions,
    registry=registry,
    rewards=rewards,
    work_service=work_service,
    list_schema_migrations_sync=list_schema_migrations_sync,
    catalog_dir=CATALOG_DIR,
    cleanup_loop_func=session_cleanup_loop,
)


bot.run(DISCORD_TOKEN)
