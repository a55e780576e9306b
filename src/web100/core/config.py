"""Filesystem locations and source selection.

Everything is read from ``WEB100_*`` environment variables so tools and tests
can point the library at another tree without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_ROOT_DIR = "/proc/web100"
DEFAULT_PROC_ROOT = "/proc"
OWNER_SOURCES = ("procfs", "psutil")


@dataclass
class Web100Config:
    root_dir: str = DEFAULT_ROOT_DIR
    header_file: Optional[str] = None
    proc_root: str = DEFAULT_PROC_ROOT
    owner_source: str = "procfs"
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.header_file is None:
            self.header_file = os.path.join(self.root_dir, "header")

    @property
    def tcp_table(self) -> str:
        return os.path.join(self.proc_root, "net", "tcp")

    @property
    def tcp6_table(self) -> str:
        return os.path.join(self.proc_root, "net", "tcp6")

    def connection_file(self, cid: int, name: str) -> str:
        return os.path.join(self.root_dir, str(cid), name)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Web100Config":
        env = os.environ if environ is None else environ
        root_dir = env.get("WEB100_ROOT_DIR", DEFAULT_ROOT_DIR)
        owner_source = env.get("WEB100_OWNER_SOURCE", "procfs").lower()
        if owner_source not in OWNER_SOURCES:
            # Unknown backend names fall back to the procfs scanner
            owner_source = "procfs"
        return cls(
            root_dir=root_dir,
            header_file=env.get("WEB100_HEADER_FILE", os.path.join(root_dir, "header")),
            proc_root=env.get("WEB100_PROC_ROOT", DEFAULT_PROC_ROOT),
            owner_source=owner_source,
            log_level=env.get("WEB100_LOG_LEVEL", "WARNING"),
        )
