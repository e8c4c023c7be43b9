import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, '.env'))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceConfig:
    key: str
    service_id: str
    quantity: int
    max_price: float


# Quora viewers + upvotes on buzzerpanel
DEFAULT_SERVICES = "viewers:24044:1000:10000,upvotes:24047:100:150000"


def parse_services(env_val: Optional[str]) -> List[ServiceConfig]:
    # format: "key:service_id:quantity:max_price,..."
    out: List[ServiceConfig] = []
    seen = set()
    for item in (env_val or '').split(','):
        item = item.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(':')]
        if len(parts) != 4:
            continue
        key, service_id, quantity, max_price = parts
        try:
            svc = ServiceConfig(key=key, service_id=service_id, quantity=int(quantity), max_price=float(max_price))
        except ValueError:
            continue
        if not key or not service_id or svc.quantity <= 0 or key in seen:
            continue
        seen.add(key)
        out.append(svc)
    if not out and env_val != DEFAULT_SERVICES:
        if (env_val or "").strip():
            logger.warning(f"SMM_SERVICES has no valid item ({env_val!r}), falling back to {DEFAULT_SERVICES}")
        return parse_services(DEFAULT_SERVICES)
    return out


def parse_admin_ids(env_val: Optional[str]) -> List[str]:
    return [part.strip() for part in (env_val or '').split(',') if part.strip()]


def parse_flag(env_val: Optional[str], default: bool = False) -> bool:
    if env_val is None or not env_val.strip():
        return default
    return env_val.strip().lower() in ('1', 'true', 'yes', 'on')


def parse_positive_int(env_val: Optional[str], default: int) -> int:
    try:
        n = int((env_val or '').strip())
    except ValueError:
        return default
    return n if n > 0 else default


BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_IDS = parse_admin_ids(os.getenv("ADMIN_IDS"))
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "")

SMM_API_URL = os.getenv("SMM_API_URL", "https://buzzerpanel.id/api/json.php")
SMM_API_KEY = os.getenv("SMM_API_KEY", "")
SMM_SECRET_KEY = os.getenv("SMM_SECRET_KEY", "")
SMM_API_TIMEOUT = float(os.getenv("SMM_API_TIMEOUT", "30"))
SMM_SERVICES = parse_services(os.getenv("SMM_SERVICES", DEFAULT_SERVICES))

# Progress message is edited every N processed links
PROGRESS_EVERY = parse_positive_int(os.getenv("PROGRESS_EVERY"), 3)
SESSION_TTL_SECONDS = parse_positive_int(os.getenv("SESSION_TTL_SECONDS"), 900)
HISTORY_LIMIT = parse_positive_int(os.getenv("HISTORY_LIMIT"), 20)
# Keep failed-but-attempted links charged instead of refunding them
CHARGE_FAILED_LINKS = parse_flag(os.getenv("CHARGE_FAILED_LINKS"))
