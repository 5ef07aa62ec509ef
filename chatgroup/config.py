"""Application settings read from the environment.

A `.env` file in the project root is loaded first; real environment
variables win over it.

    GOOGLE_GENAI_API_KEY   Gemini API key (empty → every model call falls back)
    CHATGROUP_MODEL        model name, default gemini-2.5-flash
    CHATGROUP_API_BASE     REST base URL
    CHATGROUP_LLM_TIMEOUT  per-call timeout in seconds, default 8
    DATA_DIR               room storage directory, default ./data
    LOG_LEVEL              logging level, default INFO
    HOST / PORT            dev server bind address
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from chatgroup.llm import DEFAULT_API_BASE, DEFAULT_MODEL, DEFAULT_TIMEOUT, GeminiLLM

ROOT = Path(__file__).parent.parent

_ENV_FIELDS = {
    "api_key": "GOOGLE_GENAI_API_KEY",
    "model": "CHATGROUP_MODEL",
    "api_base": "CHATGROUP_API_BASE",
    "llm_timeout": "CHATGROUP_LLM_TIMEOUT",
    "data_dir": "DATA_DIR",
    "log_level": "LOG_LEVEL",
    "host": "HOST",
    "port": "PORT",
}


class Settings(BaseModel):
    api_key: str = ""
    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    llm_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    data_dir: Path = ROOT / "data"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 13013

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from `environ` (default: os.environ after loading .env).

        Raises pydantic.ValidationError when a value has the wrong type.
        """
        if environ is None:
            load_dotenv(ROOT / ".env")
            environ = os.environ
        values = {
            field: environ[var] for field, var in _ENV_FIELDS.items()
            if environ.get(var, "") != ""
        }
        return cls.model_validate(values)

    def make_llm(self) -> GeminiLLM:
        return GeminiLLM(
            api_key=self.api_key, model=self.model,
            api_base=self.api_base, timeout=self.llm_timeout,
        )
