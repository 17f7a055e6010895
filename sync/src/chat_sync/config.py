from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    page_size: int = 20
    near_top_threshold: float = 200
    near_bottom_threshold: float = 1000
    scroll_settle_s: float = 0.15

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.near_top_threshold < 0 or self.near_bottom_threshold < 0:
            raise ValueError("scroll thresholds must be non-negative")
        if self.scroll_settle_s < 0:
            raise ValueError("scroll_settle_s must be non-negative")


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_sync_config_from_env() -> SyncConfig:
    page_size = _parse_non_negative_int("CHAT_SYNC_PAGE_SIZE", 20)
    near_top = _parse_non_negative_int("CHAT_SYNC_NEAR_TOP", 200)
    near_bottom = _parse_non_negative_int("CHAT_SYNC_NEAR_BOTTOM", 1000)
    settle_ms = _parse_non_negative_int("CHAT_SYNC_SCROLL_SETTLE_MS", 150)
    if page_size == 0:
        raise ValueError("CHAT_SYNC_PAGE_SIZE must be positive")
    return SyncConfig(
        page_size=page_size,
        near_top_threshold=near_top,
        near_bottom_threshold=near_bottom,
        scroll_settle_s=settle_ms / 1000,
    )
