from __future__ import annotations

# =========================
# STORY ENGINE POLICY
# =========================
BASE_SUCCESS_CHANCE = 70
MIN_EFFECTIVE_CHANCE = 5
MAX_EFFECTIVE_CHANCE = 95

BASE_XP_PER_LEVEL = 6
BASE_XP_FLAT = 50
KEEP_BALANCE_XP_FRACTION = 0.75

DYNAMIC_STORY_PREFIX = "ai_"

# =========================
# STORY VALIDATION
# =========================
MIN_TERMINAL_NODES = 8
MIN_POSITIVE_ENDING_RATIO = 0.6
MAX_POSITIVE_ENDING_RATIO = 0.8

# =========================
# AI STORIES
# =========================
DEFAULT_AI_MODEL = "google/gemini-3-flash-preview"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
AI_TEMPERATURE = 1.5
AI_MAX_TOKENS = 2000

AI_STORY_FIRST_SUCCESS_RATE = 50
AI_STORY_FINAL_SUCCESS_RATE = 75

AI_SUCCESS_COINS_MIN = 100
AI_MAX_TERMINAL_COINS = 600
AI_MIN_TERMINAL_COINS = -400
AI_MIN_XP_MULTIPLIER = 0.5
AI_MAX_XP_MULTIPLIER = 2.0

AI_STORY_EXPECTED_PATHS = 16
AI_STORY_AVERAGE_REWARD = 200

AI_RETRY_ATTEMPTS = 3
AI_RETRY_BACKOFF_SECONDS = 1.0

AI_STORY_NOUN_COUNT = 10
AI_STORY_VERB_COUNT = 2
AI_STORY_MAX_USER_FACTS = 3

# =========================
# SESSIONS
# =========================
DEFAULT_SESSION_TTL_HOURS = 24
DEFAULT_CLEANUP_INTERVAL_SECONDS = 30 * 60
PROCESSING_LOCK_STALE_SECONDS = 5 * 60

# =========================
# WORK
# =========================
DEFAULT_STORY_CHANCE_PERCENT = 20
DEFAULT_AI_STORY_CHANCE_PERCENT = 50
DEFAULT_AI_STORY_ENABLED = False
WORK_COOLDOWN_MINUTES = 60
WORK_COINS_MIN = 20
WORK_COINS_MAX = 80
WORK_XP_MIN = 10
WORK_XP_MAX = 30
XP_PER_LEVEL_STEP = 100

WORK_ACTIVITIES = [
    ("Courier", "You delivered a lukewarm pizza across town."),
    ("Clerk", "You spent the afternoon stamping forms at the labour office."),
    ("Team player", "You played three rounds of trivia with the boss."),
    ("Social media manager", "You wrote a post for the company account."),
    ("Barista", "You survived the morning rush at the coffee bar."),
    ("IT support", "You turned it off and on again. Twelve times."),
]

# =========================
# DISCORD
# =========================
DEFAULT_COMMAND_PREFIX = "!"
DEFAULT_ALLOWED_CHANNEL_IDS: set[int] = set()
DISCORD_MAX_MESSAGE_LEN = 1900
