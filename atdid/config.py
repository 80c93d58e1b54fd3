"""
Configuration for atdid.

Values come from the environment (optionally a .env file in the working
directory). The CLI builds one Settings per invocation and hands it to
every command, so nothing here is a process-wide default.
"""

import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

DEFAULT_PDS = "https://bsky.social"
PLC_DIRECTORY = "https://plc.directory"


@dataclass(frozen=True)
class Settings:
    pds: str = DEFAULT_PDS
    plc_directory: str = PLC_DIRECTORY
    password: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from ATPROTO_PDS, PLC_DIRECTORY and ATPROTO_PASSWORD."""
        load_dotenv()
        return cls(
            pds=os.getenv("ATPROTO_PDS") or DEFAULT_PDS,
            plc_directory=os.getenv("PLC_DIRECTORY") or PLC_DIRECTORY,
            password=os.getenv("ATPROTO_PASSWORD") or None,
        )

    def with_pds(self, pds: str | None) -> "Settings":
        if not pds:
            return self
        return replace(self, pds=pds)
