"""
Runtime configuration.
Values come from the environment (optionally a .env file) with sane defaults.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _parse_fine_schedule(raw: str) -> list[tuple[int, float]]:
    """Parse "1:100,8:250,31:500" into [(1, 100.0), (8, 250.0), (31, 500.0)]."""
    tiers = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        days, amount = chunk.split(":")
        tiers.append((int(days), float(amount)))
    tiers.sort()
    # Fine must never drop as lateness grows
    for (_, lower), (_, upper) in zip(tiers, tiers[1:]):
        if upper < lower:
            raise ValueError(f"FINE_SCHEDULE is not monotonic: {raw}")
    return tiers


# ── Persistence ──
if os.environ.get("VERCEL"):
    DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:////tmp/chitfund.db")
else:
    DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./chitfund.db")

# ── Collections ──
DUE_DAY = int(os.environ.get("DUE_DAY", "15"))
FINE_SCHEDULE = _parse_fine_schedule(os.environ.get("FINE_SCHEDULE", "1:100,8:250,31:500"))

# ── Auctions ──
MONEY_EPSILON = 0.01

# ── Loans ──
LOAN_COOLDOWN_DAYS = int(os.environ.get("LOAN_COOLDOWN_DAYS", "30"))
LOAN_INTEREST_RATE = float(os.environ.get("LOAN_INTEREST_RATE", "10"))
LOAN_TENURE_MONTHS = int(os.environ.get("LOAN_TENURE_MONTHS", "12"))

# ── Risk ──
AGENT_MIN_COLLECTION_RATIO = float(os.environ.get("AGENT_MIN_COLLECTION_RATIO", "0.8"))
AGENT_MIN_SAMPLE = int(os.environ.get("AGENT_MIN_SAMPLE", "5"))

# ── Analytics ──
LEADERBOARD_SIZE = int(os.environ.get("LEADERBOARD_SIZE", "10"))
ROLLUP_TIMEOUT_SECONDS = float(os.environ.get("ROLLUP_TIMEOUT_SECONDS", "30"))

# ── Collaborators ──
MESSAGING_WEBHOOK_URL = os.environ.get("MESSAGING_WEBHOOK_URL", "")
UPLOAD_DIR = "/tmp/uploads" if os.environ.get("VERCEL") else os.environ.get("UPLOAD_DIR", "uploads")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "/uploads")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "")
