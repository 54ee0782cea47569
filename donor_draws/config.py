"""
Environment configuration (set in .env or your environment):

  - DISCORD_TOKEN               (required) bot token
  - OWNER_ID                    (optional) user id that always has admin rights
  - SERVER_IDS                  (optional) comma separated guild ids; empty = all guilds
  - TIP_BOT_ID                  (optional) tipping bot user id, default tip.cc
  - DATA_DIR                    (optional) default: data
  - LOG_CHANNEL_ID              (optional) fallback channel for error alerts
  - LOG_FILE                    (optional) also write logs to this file
  - COINMARKETCAP_API_KEY       (optional)
  - COINGECKO_PRO_API_KEY       (optional)
  - PRICE_CACHE_SECONDS         (optional) default 300
  - HTTP_TIMEOUT_SECONDS        (optional) default 10
  - SCHEDULER_INTERVAL_SECONDS  (optional) default 60
  - NOTIFY_LEAD_MINUTES         (optional) default 60
  - MAX_BACKUPS                 (optional) default 5
  - PRICE_OVERRIDES             (optional) JSON object, e.g. {"XLA": 0.0002}
"""
from __future__ import annotations

import json
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

TIPCC_BOT_ID = "617037497574359050"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _split_ids(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def _overrides(raw: str) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        log.error("PRICE_OVERRIDES is not valid JSON: %s", e)
        return {}
    if not isinstance(data, dict):
        return {}
    out = {}
    for symbol, price in data.items():
        try:
            out[str(symbol).upper()] = float(price)
        except (TypeError, ValueError):
            continue
    return out


def load_config() -> dict:
    load_dotenv()
    cfg = {
        "token": os.getenv("DISCORD_TOKEN", "") or os.getenv("BOT_TOKEN", ""),
        "owner_id": os.getenv("OWNER_ID", ""),
        "server_ids": _split_ids(os.getenv("SERVER_IDS", "")),
        "tip_bot_id": os.getenv("TIP_BOT_ID", TIPCC_BOT_ID),
        "data_dir": os.getenv("DATA_DIR", "data"),
        "log_channel_id": os.getenv("LOG_CHANNEL_ID", ""),
        "log_file": os.getenv("LOG_FILE", ""),
        "coinmarketcap_key": os.getenv("COINMARKETCAP_API_KEY", ""),
        "coingecko_pro_key": os.getenv("COINGECKO_PRO_API_KEY", ""),
        "price_cache_seconds": float(os.getenv("PRICE_CACHE_SECONDS", "300")),
        "http_timeout": float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")),
        "scheduler_interval": float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60")),
        "notify_lead_minutes": float(os.getenv("NOTIFY_LEAD_MINUTES", "60")),
        "max_backups": int(os.getenv("MAX_BACKUPS", "5")),
        "price_overrides": _overrides(os.getenv("PRICE_OVERRIDES", "")),
    }
    return cfg


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
