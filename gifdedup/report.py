from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List

from .models import ScanReport


def _fmt_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024**2:
        return f"{n/1024:.2f} KiB"
    if n < 1024**3:
        return f"{n/1024**2:.2f} MiB"
    return f"{n/1024**3:.2f} GiB"


def _size_of(p: str) -> int:
    try:
        return int(Path(p).stat().st_size)
    except OSError:
        return 0


def report_payload(report: ScanReport) -> Dict[str, Any]:
    """JSON-ready report: summary, stats, groups (keep-first members), pairs, excluded."""
    payload = report.to_payload()
    reclaim = 0
    for g in report.groups:
        for member in g.members[1:]:
            reclaim += _size_of(str(member))
    payload["summary"]["reclaimable_bytes"] = reclaim
    payload["pairs"] = [pc.to_payload() for pc in report.pairs]
    return payload


def write_report(path: Path, report: ScanReport) -> Path:
    """Write the report as JSON (temp file + replace so readers never see half a report)."""
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    try:
        tmp.write_text(json.dumps(report_payload(report), indent=2), encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    return path


def load_report(path: Path) -> Dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def render_summary(payload: Dict[str, Any], verbosity: int = 1) -> str:
    """Plain-text view of a report payload (as written by write_report or loaded back)."""
    s = payload.get("summary") or {}
    lines: List[str] = [
        f"groups     : {s.get('groups', 0)}",
        f"duplicates : {s.get('duplicates', 0)}",
        f"reclaimable: {_fmt_bytes(int(s.get('reclaimable_bytes', 0) or 0))}",
        f"pairs      : {s.get('pairs_classified', 0)}",
        f"excluded   : {s.get('excluded', 0)}",
    ]
    if s.get("degraded"):
        reasons = ", ".join(f"{k}={v}" for k, v in sorted((s.get("degraded_reasons") or {}).items()))
        lines.append(f"degraded   : {s['degraded']} ({reasons})")
    if s.get("cancelled"):
        lines.append("status     : CANCELLED (partial report)")
    if verbosity <= 0:
        return "\n".join(lines)

    for gid, group in (payload.get("groups") or {}).items():
        members = group.get("members") or []
        if not members:
            continue
        lines.append("")
        lines.append(f"{gid}:")
        lines.append(f"  keep  {members[0]}")
        for m in members[1:]:
            lines.append(f"  dup   {m}")
        if verbosity >= 2:
            for pair in group.get("pairs") or []:
                a, b = pair.get("files", ["?", "?"])
                flag = "  [review]" if (pair.get("metrics") or {}).get("needs_review") else ""
                lines.append(f"    L{pair.get('level')} {pair.get('confidence')}%  {Path(a).name} <> {Path(b).name}{flag}")

    excluded = payload.get("excluded") or []
    if excluded and verbosity >= 2:
        lines.append("")
        lines.append("excluded:")
        for e in excluded:
            lines.append(f"  {e.get('path')}: {e.get('reason')}")
    return "\n".join(lines)
