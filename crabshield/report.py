"""
crabshield/report.py
════════════════════

Renderers for aggregated findings.

  text   human-readable blocks plus a summary line
  json   pretty-printed list of finding records
  sarif  SARIF 2.1.0, one run, driver ``crabshield``
  html   single self-contained page rendered with Jinja2

Every renderer takes the already-sorted findings and returns a string; the
CLI decides where it goes.
"""

from __future__ import annotations

import json
import textwrap
from typing import Any, Dict, List, Optional, Sequence

import jinja2

from crabshield.findings import Finding, Severity

TOOL_NAME = "crabshield"

FORMATS = ("text", "json", "sarif", "html")

_SARIF_LEVELS = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
}


def sarif_level(severity: Severity) -> str:
    return _SARIF_LEVELS[severity]


# ═════════════════════════════════════════════════════════════════════════
#  TEXT
# ═════════════════════════════════════════════════════════════════════════

def render_text(findings: Sequence[Finding], summary: Optional[str] = None) -> str:
    out: List[str] = []
    for f in findings:
        loc = f"{f.file}:{f.line}"
        if f.column:
            loc += f":{f.column}"
        out.append(f"[{f.severity.label}] {f.detector_id} {f.name}")
        out.append(f"  --> {loc}")
        if f.function:
            out.append(f"  in fn {f.function}")
        out.append(f"  confidence: {f.confidence.label}")
        out.append(f"  {f.message}")
        if f.snippet:
            out.append(f"   | {f.snippet}")
        if f.recommendation:
            out.append(textwrap.fill(f.recommendation, width=78,
                                     initial_indent="  = help: ",
                                     subsequent_indent="          "))
        out.append("")
    if summary is None:
        summary = _count_line(findings)
    if summary:
        out.append(summary)
    return "\n".join(out) + "\n" if out else ""


def _count_line(findings: Sequence[Finding]) -> str:
    if not findings:
        return "No findings."
    counts = {s: 0 for s in Severity}
    for f in findings:
        counts[f.severity] += 1
    by_sev = ", ".join(
        f"{counts[s]} {s.value}"
        for s in sorted(Severity, key=lambda s: -s.rank) if counts[s]
    )
    return f"{len(findings)} finding(s): {by_sev}"


# ═════════════════════════════════════════════════════════════════════════
#  JSON
# ═════════════════════════════════════════════════════════════════════════

def render_json(findings: Sequence[Finding]) -> str:
    records = []
    for f in findings:
        record = f.to_dict()
        record.pop("check_category", None)
        records.append(record)
    return json.dumps(records, indent=2) + "\n"


# ═════════════════════════════════════════════════════════════════════════
#  SARIF 2.1.0
# ═════════════════════════════════════════════════════════════════════════

SARIF_VERSION = "2.1.0"
SARIF_SCHEMA = (
    "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/"
    "Schemata/sarif-schema-2.1.0.json"
)


def build_sarif(findings: Sequence[Finding], version: str) -> Dict[str, Any]:
    rules: Dict[str, Dict[str, Any]] = {}
    results: List[Dict[str, Any]] = []
    for f in findings:
        # ── rule ─────────────────────────────────────────────────────
        if f.detector_id not in rules:
            rule: Dict[str, Any] = {
                "id": f.detector_id,
                "name": f.name,
                "shortDescription": {"text": f.name},
                "defaultConfiguration": {"level": sarif_level(f.severity)},
                "properties": {"chain": f.chain} if f.chain else {},
            }
            if f.recommendation:
                rule["help"] = {"text": f.recommendation}
            rules[f.detector_id] = rule

        # ── result ───────────────────────────────────────────────────
        region: Dict[str, Any] = {"startLine": f.line}
        if f.column:
            region["startColumn"] = f.column
        if f.end_line and f.end_line != f.line:
            region["endLine"] = f.end_line
        if f.snippet:
            region["snippet"] = {"text": f.snippet}
        results.append({
            "ruleId": f.detector_id,
            "ruleIndex": list(rules).index(f.detector_id),
            "level": sarif_level(f.severity),
            "message": {"text": f.message},
            "locations": [{
                "physicalLocation": {
                    "artifactLocation": {"uri": f.file},
                    "region": region,
                }
            }],
            "properties": {
                "severity": f.severity.value,
                "confidence": f.confidence.value,
            },
        })

    return {
        "$schema": SARIF_SCHEMA,
        "version": SARIF_VERSION,
        "runs": [{
            "tool": {
                "driver": {
                    "name": TOOL_NAME,
                    "version": version,
                    "rules": list(rules.values()),
                }
            },
            "results": results,
        }],
    }


def render_sarif(findings: Sequence[Finding], version: str) -> str:
    return json.dumps(build_sarif(findings, version), indent=2) + "\n"


# ═════════════════════════════════════════════════════════════════════════
#  HTML
# ═════════════════════════════════════════════════════════════════════════

_HTML_TEMPLATE = textwrap.dedent("""\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>crabshield report</title>
  <style>
    :root { --bg: #1e1e2e; --fg: #cdd6f4; --surface: #313244;
            --red: #f38ba8; --peach: #fab387; --yellow: #f9e2af;
            --blue: #89b4fa; --green: #a6e3a1; --border: #45475a; }
    body { font-family: monospace; background: var(--bg); color: var(--fg);
           padding: 2rem; }
    .card { background: var(--surface); border: 1px solid var(--border);
            border-radius: 8px; padding: 1rem; margin-bottom: 1rem; }
    .sev-critical { border-left: 4px solid var(--red); }
    .sev-high     { border-left: 4px solid var(--peach); }
    .sev-medium   { border-left: 4px solid var(--yellow); }
    .sev-low      { border-left: 4px solid var(--blue); }
    .loc  { color: var(--blue); }
    .help { color: var(--green); margin-top: 0.3rem; }
    pre   { margin-top: 0.4rem; }
  </style>
</head>
<body>
  <h1>crabshield report</h1>
  {% for f in findings %}
  <div class="card sev-{{ f.severity }}">
    <strong>{{ f.severity | upper }}</strong>
    <code>[{{ f.detector_id }}]</code> {{ f.name }}
    <span class="loc">{{ f.file }}:{{ f.line }}</span>
    <div>{{ f.message }} (confidence: {{ f.confidence }})</div>
    {% if f.snippet %}<pre>{{ f.snippet }}</pre>{% endif %}
    {% if f.recommendation %}<div class="help">help: {{ f.recommendation }}</div>{% endif %}
  </div>
  {% endfor %}
  <p>{{ findings | length }} finding{{ 's' if findings | length != 1 else '' }}.</p>
</body>
</html>
""")


def render_html(findings: Sequence[Finding]) -> str:
    env = jinja2.Environment(autoescape=True)
    template = env.from_string(_HTML_TEMPLATE)
    return template.render(findings=[f.to_dict() for f in findings])


def render(findings: Sequence[Finding], fmt: str, version: str,
           summary: Optional[str] = None) -> str:
    if fmt == "text":
        return render_text(findings, summary)
    if fmt == "json":
        return render_json(findings)
    if fmt == "sarif":
        return render_sarif(findings, version)
    if fmt == "html":
        return render_html(findings)
    raise ValueError(f"unknown output format '{fmt}'")
