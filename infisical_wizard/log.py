"""
Logging and subprocess helpers for infisical_wizard.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional

from tqdm import tqdm

from infisical_wizard.errors import CommandError

LOG_PATH = Path("/var/log/infisical-install.log")
FALLBACK_LOG_PATH = Path("./infisical-install.log")

REDACT_PATTERNS = [
    re.compile(r"(Authorization:\s*Bearer\s+)[^\s\"']+", re.IGNORECASE),
    re.compile(r"(dns_cloudflare_api_token\s*=\s*)[^\s\"']+", re.IGNORECASE),
    re.compile(r"(\b[A-Z_]*PASSWORD=)[^\s\"']+"),
    re.compile(r"(\bENCRYPTION_KEY=)[^\s\"']+"),
    re.compile(r"(\bAUTH_SECRET=)[^\s\"']+"),
    re.compile(r"(postgres://[^:\s]+:)[^@\s]+(?=@)"),
]


def redact(s: str) -> str:
    out = s
    for pat in REDACT_PATTERNS:
        out = pat.sub(r"\1<REDACTED>", out)
    return out


def log_line(s: str) -> None:
    try:
        LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with LOG_PATH.open("a", encoding="utf-8") as f:
            f.write(s + "\n")
        return
    except OSError:
        pass
    try:
        with FALLBACK_LOG_PATH.open("a", encoding="utf-8") as f:
            f.write(s + "\n")
    except OSError:
        return


def info(msg: str) -> None:
    tqdm.write(f"[INFO]  {msg}")
    log_line(f"[INFO]  {redact(msg)}")


def warn(msg: str) -> None:
    tqdm.write(f"[WARN]  {msg}")
    log_line(f"[WARN]  {redact(msg)}")


def die(msg: str, code: int = 1) -> None:
    tqdm.write(f"[FATAL] {msg}", file=sys.stderr)
    log_line(f"[FATAL] {redact(msg)}")
    sys.exit(code)


def sh(
    cmd: str,
    *,
    check: bool = True,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    hint: str = "",
) -> int:
    """
    Run a shell command, streaming merged output to the console and run log.

    With check=True a non-zero exit raises CommandError carrying the
    redacted command and `hint`.
    """
    safe_cmd = redact(cmd)
    tqdm.write(f"\n$ {safe_cmd}")
    log_line(f"\n$ {safe_cmd}")

    proc = subprocess.Popen(
        ["bash", "-lc", cmd],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        preexec_fn=os.setsid,
    )

    try:
        assert proc.stdout is not None
        for line in proc.stdout:
            line = redact(line.rstrip("\n"))
            tqdm.write(line)
            log_line(line)
    except KeyboardInterrupt:
        tqdm.write("[WARN] Ctrl-C received. Terminating command...")
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except OSError:
            pass
        raise

    rc = proc.wait()
    if check and rc != 0:
        raise CommandError(safe_cmd, rc, hint)
    return rc
