import json
import logging
import os
import threading
from dataclasses import dataclass, field
import pytz

logger = logging.getLogger(__name__)

# Bot Configuration
BOT_TOKEN = os.environ.get("BOT_TOKEN", "")
ADMIN_ID = int(os.environ.get("ADMIN_ID", "0"))
STORE_NAME = os.environ.get("STORE_NAME", "@VPN_STORE")

# Database Configuration
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///sellvpn.db")

# Runtime toggles file (reseller terms, trial toggle)
VARS_FILE = os.environ.get("VARS_FILE", ".vars.json")

# Legacy flat files imported by init_db.py
LEGACY_FILES = {
    "trial": "trial.db",
    "resellers": "ressel.db"
}

PROTOCOLS = ("ssh", "vmess", "vless", "trojan", "shadowsocks", "zivpn", "udp_http")

# Janitor Settings
JANITOR_SETTINGS = {
    "interval_seconds": 6 * 60 * 60,  # every 6 hours
    "expired_grace_days": 3
}

# Provisioning Settings
PROVISION_SETTINGS = {
    "request_timeout": 30,  # seconds per panel call
    "trial_days": 1,
    "trial_quota": 1,  # GB
    "trial_ip_limit": 1
}

# Messages
MESSAGES = {
    "welcome": "🌟 Welcome to {store}!\nUse /accounts to list your accounts or /trial to get a free trial.",
    "not_found": "❌ Server not found. Please try again.",
    "reseller_only": "⛔️ This server is reserved for resellers.",
    "trial_used": "⚠️ You have already used your trial today. Try again tomorrow.",
    "trial_disabled": "⚠️ Trials are currently disabled.",
    "invalid_username": "❌ Invalid username. Use letters and digits only, without spaces.",
    "backend_failure": "❌ The server rejected the request: {error}",
    "store_failure": "❌ Could not save your account. Please contact support.",
    "no_accounts": "📭 You have no accounts yet."
}

# Timezone used for calendar-day decisions
TIMEZONE = pytz.timezone(os.environ.get("TIMEZONE", "Asia/Jakarta"))


@dataclass(frozen=True)
class ResellerTerms:
    min_accounts: int = 5
    min_topup_amount: int = 30000


@dataclass(frozen=True)
class Settings:
    reseller_terms: ResellerTerms = field(default_factory=ResellerTerms)
    trial_enabled: bool = True
    topup_enabled: bool = True
    trial_days: int = PROVISION_SETTINGS["trial_days"]


def parse_settings(data: dict) -> Settings:
    """Build a Settings snapshot from a vars dict, ignoring unknown keys"""
    terms = data.get("reseller_terms") or {}
    defaults = ResellerTerms()
    return Settings(
        reseller_terms=ResellerTerms(
            min_accounts=int(terms.get("min_accounts", defaults.min_accounts)),
            min_topup_amount=int(terms.get("min_topup_amount", defaults.min_topup_amount))
        ),
        trial_enabled=bool(data.get("trial_enabled", True)),
        topup_enabled=bool(data.get("topup_enabled", True)),
        trial_days=int(data.get("trial_days", PROVISION_SETTINGS["trial_days"]))
    )


class SettingsStore:
    """Holds the current Settings snapshot.

    Readers take ``current`` once per decision. ``reload`` parses the whole
    file before swapping the reference, so a bad file leaves the previous
    snapshot in place.
    """

    def __init__(self, path: str = VARS_FILE, initial: Settings = None):
        self.path = path
        self._lock = threading.Lock()
        self._current = initial or Settings()

    @property
    def current(self) -> Settings:
        return self._current

    def reload(self) -> Settings:
        try:
            with open(self.path, 'r') as f:
                snapshot = parse_settings(json.load(f))
        except FileNotFoundError:
            logger.warning(f"Settings file {self.path} not found, keeping current settings")
            return self._current
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Invalid settings file {self.path}: {e}")
            return self._current

        with self._lock:
            self._current = snapshot
        logger.info(f"Settings reloaded from {self.path}")
        return snapshot
