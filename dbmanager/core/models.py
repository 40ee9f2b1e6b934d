"""
Dump Request Models

Connection parameters, request shape, enumerations and the request
fingerprint used as the job registry key.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dbmanager.core.errors import ValidationError


class ArtifactKind(str, Enum):
    STRUCTURE = "structure"
    DATA = "data"

    @classmethod
    def parse(cls, value: str) -> "ArtifactKind":
        """Accept the canonical names and the legacy form values (``struct``)."""
        normalized = (value or "").strip().lower()
        if normalized in ("struct", "structure"):
            return cls.STRUCTURE
        if normalized == "data":
            return cls.DATA
        raise ValidationError("DBM-1004", field="type", value=value)


class OutputMode(str, Enum):
    INLINE_STREAM = "inline-stream"
    INLINE_DOWNLOAD = "inline-download"
    BACKGROUND_FILE = "background-file"

    @property
    def is_inline(self) -> bool:
        return self is not OutputMode.BACKGROUND_FILE

    @classmethod
    def parse(cls, value: Optional[str]) -> "OutputMode":
        normalized = (value or "").strip().lower()
        aliases = {
            "": cls.BACKGROUND_FILE,
            "open": cls.INLINE_STREAM,
            "down": cls.INLINE_DOWNLOAD,
            "file": cls.BACKGROUND_FILE,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError("DBM-1004", field="output", value=value) from None


class OperationKind(str, Enum):
    EXPORT = "export"
    IMPORT = "import"


# MySQL character sets accepted by --default-character-set
CHARSETS: Tuple[str, ...] = (
    "armscii8", "ascii", "big5", "binary", "cp1250", "cp1251", "cp1256",
    "cp1257", "cp850", "cp852", "cp866", "cp932", "dec8", "eucjpms", "euckr",
    "gb18030", "gb2312", "gbk", "geostd8", "greek", "hebrew", "hp8",
    "keybcs2", "koi8r", "koi8u", "latin1", "latin2", "latin5", "latin7",
    "macce", "macroman", "sjis", "swe7", "tis620", "ucs2", "ujis", "utf16",
    "utf16le", "utf32", "utf8", "utf8mb3", "utf8mb4",
)


@dataclass
class DbAuth:
    """Connection parameters handed to the dump utility."""
    host: str
    username: str
    password: str = ""
    charset: str = "utf8mb4"
    database: str = ""

    def host_and_port(self, default_port: int = 3306) -> Tuple[str, str]:
        """Split ``host:port`` on the last colon; the port falls back to the default."""
        host, port = self.host, ""
        p = self.host.rfind(":")
        if p > 0:
            host, port = self.host[:p], self.host[p + 1:]
        return host, port or str(default_port)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "username": self.username,
            "password": self.password,
            "charset": self.charset,
            "database": self.database,
        }


@dataclass
class DumpRequest:
    """One export request. Lives for the duration of a single job."""
    auth: DbAuth
    tables: List[str]
    kinds: List[ArtifactKind]
    mode: OutputMode = OutputMode.BACKGROUND_FILE
    reset_auto_increment: bool = True

    def normalized(self) -> "DumpRequest":
        """
        Drop blank and repeated table names (first occurrence wins, order kept)
        and order artifact kinds structure-first.
        """
        seen = set()
        tables = []
        for name in self.tables:
            name = name.strip()
            if name and name not in seen:
                seen.add(name)
                tables.append(name)
        kinds = [k for k in ArtifactKind if k in set(self.kinds)]
        return replace(self, tables=tables, kinds=kinds)

    def validate(self) -> "DumpRequest":
        """Return the normalized request or raise ValidationError."""
        request = self.normalized()
        if not request.auth.database:
            raise ValidationError("DBM-1005")
        if not request.tables:
            raise ValidationError("DBM-1001")
        if not request.kinds:
            raise ValidationError("DBM-1003")
        if request.auth.charset not in CHARSETS:
            raise ValidationError("DBM-1002", charset=request.auth.charset)
        return request

    def wants(self, kind: ArtifactKind) -> bool:
        return kind in self.kinds

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "auth": self.auth.to_dict(),
            "tables": list(self.tables),
            "kinds": [k.value for k in self.kinds],
            "mode": self.mode.value,
            "reset_auto_increment": self.reset_auto_increment,
        }


def compute_fingerprint(request: DumpRequest) -> str:
    """
    Deterministic digest of the parameters that define an export.

    Tables and kinds are sorted first so that input ordering never produces
    a different key for the same effective export.
    """
    canonical = {
        "database": request.auth.database,
        "tables": sorted({t.strip() for t in request.tables if t.strip()}),
        "kinds": sorted({k.value for k in request.kinds}),
        "mode": request.mode.value,
    }
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def split_names(values: Optional[Iterable[str]]) -> List[str]:
    """
    Flatten form values that may hold a single comma separated list.

    ``["a,b"]`` and ``["a", "b"]`` both become ``["a", "b"]``.
    """
    names: List[str] = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names
