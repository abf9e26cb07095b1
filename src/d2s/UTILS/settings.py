"""
Tool settings read from the environment, optionally seeded from a .env file.
"""
import os
import shlex
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigurationError

ENV_PREFIX = "D2S_"


class Settings(BaseModel):
    """
    Locations of external tools and execution knobs.
    """
    docker: str = "docker"
    upx: str = "upx"
    upx_args: List[str] = Field(default_factory=lambda: ["--best"])
    work_dir: Optional[str] = None
    compress_workers: Optional[int] = Field(default=None, ge=1)
    command_timeout: float = Field(default=600, gt=0)
    keep_context: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> "Settings":
        """
        Builds settings from ``D2S_*`` variables.

        When reading the process environment, a ``.env`` file is loaded first;
        variables already set in the environment win.
        """
        if environ is None:
            load_dotenv(dotenv_path=dotenv_path, override=False)
            environ = os.environ

        values: Dict[str, object] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "upx_args":
                values[name] = shlex.split(raw)
            elif name == "keep_context":
                values[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                values[name] = raw

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {ENV_PREFIX}* setting: {e}") from e
