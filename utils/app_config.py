"""Environment-driven settings for the chat service."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent.parent


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc
    return value if value > 0 else None


@dataclass
class AppConfig:
    """Values read from the process environment (and `.env`, via python-dotenv).

    Attributes:
        chat_model: Model name passed to the Responses API.
        system_prompt_path: File holding the system instruction.
        reasoning_budget: Thinking budget used when a session enables reasoning.
        generation_timeout: Optional wall-clock limit for one reply, in seconds.
        log_level: Root logging level name.
    """

    chat_model: str = "gpt-5"
    system_prompt_path: Path = BASE_DIR / "system.txt"
    reasoning_budget: int = 8192
    generation_timeout: Optional[float] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        budget = os.getenv("REASONING_BUDGET", "8192")
        try:
            reasoning_budget = int(budget)
        except ValueError as exc:
            raise RuntimeError(f"REASONING_BUDGET must be an integer, got {budget!r}") from exc

        return cls(
            chat_model=os.getenv("CHAT_MODEL") or "gpt-5",
            system_prompt_path=Path(os.getenv("SYSTEM_PROMPT_PATH") or BASE_DIR / "system.txt").expanduser(),
            reasoning_budget=reasoning_budget,
            generation_timeout=_optional_float("GENERATION_TIMEOUT_SECONDS"),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
