from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .models import AuthChallenge, CapabilitySnapshot, Finding, Report, Severity, ToolDef
from .rules import RULES, RuleSpec

SEVERITY_STYLES = {Severity.error: "red", Severity.warning: "yellow", Severity.info: "cyan"}
SEVERITY_ICONS = {Severity.error: "[x]", Severity.warning: "[!]", Severity.info: "[i]"}

OAUTH_HINT = "Re-run with --oauth to authorize in your browser, or pass --auth-type bearer --auth-token <token>."


def render_json(report: Report) -> str:
    return report.model_dump_json(indent=2, by_alias=True)


def auth_error_payload(challenge: AuthChallenge) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": "authentication_required", "message": challenge.message}
    if challenge.www_authenticate_header:
        payload["authHeader"] = challenge.www_authenticate_header
    return payload


def render_auth_error_json(challenge: AuthChallenge) -> str:
    return json.dumps(auth_error_payload(challenge), indent=2)


def sorted_findings(findings: List[Finding]) -> List[Finding]:
    """Findings grouped error > warning > info, keeping evaluation order inside a group."""
    return sorted(findings, key=lambda f: f.severity.rank)


def rules_to_fix(findings: List[Finding]) -> List[RuleSpec]:
    """The rule behind each finding, once per rule, most severe first."""
    seen: Dict[str, RuleSpec] = {}
    for f in sorted_findings(findings):
        seen.setdefault(f.rule_id, RULES[f.rule_id])
    return list(seen.values())


def format_type(prop: Any) -> str:
    if not isinstance(prop, dict):
        return "unknown"
    if isinstance(prop.get("anyOf"), list):
        return " | ".join(format_type(p) for p in prop["anyOf"])
    declared = prop.get("type")
    if declared == "array" and isinstance(prop.get("items"), dict):
        return f"{format_type(prop['items'])}[]"
    if isinstance(declared, list):
        return " | ".join(str(t) for t in declared)
    return str(declared) if declared else "unknown"


def inputs_summary(tool: ToolDef) -> str:
    props = tool.properties()
    if not props:
        return "-"
    required = set(tool.required())
    return ", ".join(f"{name}{'*' if name in required else ''}" for name in props)


def capability_count(items: Optional[List[Any]], supported: bool) -> str:
    if not supported or items is None:
        return "Not supported"
    return str(len(items))


def _health_text(snapshot: CapabilitySnapshot) -> Optional[str]:
    health = snapshot.health
    if health is None:
        return None
    if health.available:
        return f"{health.status} OK"
    return f"unavailable ({health.error})" if health.error else "unavailable"


def _ms(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.0f} ms"


# Markdown


def _escape_md(text: str) -> str:
    return text.replace("|", "\\|").replace("\r", "").replace("\n", " ")


def _markdown_tool(tool: ToolDef, findings: List[Finding]) -> List[str]:
    badges = []
    annotations = tool.annotations or {}
    for key, label in (
        ("readOnlyHint", "read-only"),
        ("destructiveHint", "destructive"),
        ("idempotentHint", "idempotent"),
        ("openWorldHint", "open-world"),
    ):
        if annotations.get(key):
            badges.append(f"`{label}`")
    title = annotations.get("title")
    heading = f"`{title}` ({tool.name})" if title else f"`{tool.name}`"
    lines = [f"### {heading}{' ' + ' '.join(badges) if badges else ''}", ""]
    lines.append(_escape_md(tool.description) if tool.description else "*No description*")
    lines.append("")

    props = tool.properties()
    if not props:
        lines.append("**Inputs:** None")
    else:
        required = set(tool.required())
        lines += ["**Inputs:**", "", "| Name | Type | Description |", "|------|------|-------------|"]
        for name, prop in props.items():
            desc = prop.get("description") if isinstance(prop, dict) else None
            mark = "*" if name in required else ""
            lines.append(f"| `{name}`{mark} | {format_type(prop)} | {_escape_md(desc) if desc else '-'} |")
    lines.append("")

    tool_findings = [f for f in findings if f.tool_name == tool.name]
    if tool_findings:
        lines += ["**Issues:**", ""]
        for f in sorted_findings(tool_findings):
            input_part = f": `{f.input_name}`" if f.input_name else ""
            lines.append(f"- {SEVERITY_ICONS[f.severity]} {f.message}{input_part}")
        lines.append("")
    return lines


def render_markdown(report: Report) -> str:
    snap = report.snapshot
    name = snap.server_name or report.target
    version = f" v{snap.server_version}" if snap.server_version else ""
    lines = [f"# {name}{version}", "", f"Target: `{report.target}`", ""]

    lines += ["## Summary", "", "| Metric | Value |", "|--------|-------|"]
    lines.append(f"| Transport | {snap.transport.value if snap.transport else '-'} |")
    lines.append(f"| Tools | {len(snap.tools) if snap.tools_error is None else 'Unavailable'} |")
    lines.append(f"| Prompts | {capability_count(snap.prompts, snap.prompts_supported)} |")
    lines.append(f"| Resources | {capability_count(snap.resources, snap.resources_supported)} |")
    lines.append(f"| Inputs | {sum(len(t.properties()) for t in snap.tools)} |")
    health = _health_text(snap)
    if health:
        lines.append(f"| /health | {_escape_md(health)} |")
    summary = report.summary
    lines.append(f"| Findings | {summary['error']} errors, {summary['warning']} warnings, {summary['info']} info |")
    lines.append("")

    lines += ["## Tools", ""]
    if snap.tools_error:
        lines += [f"*Unavailable: {_escape_md(snap.tools_error)}*", ""]
    elif not snap.tools:
        lines += ["*No tools exposed*", ""]
    for tool in snap.tools:
        lines += _markdown_tool(tool, report.findings)

    lines += ["## Resources", ""]
    if not snap.resources_supported or snap.resources is None:
        lines.append("*Not supported by server*")
    elif not snap.resources:
        lines.append("*No resources exposed*")
    else:
        lines += ["| Name | URI | Description |", "|------|-----|-------------|"]
        for r in snap.resources:
            desc = _escape_md(r.description) if r.description else "-"
            lines.append(f"| `{_escape_md(r.name)}` | `{_escape_md(r.uri)}` | {desc} |")
    lines.append("")

    lines += ["## Prompts", ""]
    if not snap.prompts_supported or snap.prompts is None:
        lines.append("*Not supported by server*")
    elif not snap.prompts:
        lines.append("*No prompts exposed*")
    else:
        lines += ["| Name | Arguments | Description |", "|------|-----------|-------------|"]
        for p in snap.prompts:
            args = ", ".join(f"{a.name}{'*' if a.required else ''}" for a in p.arguments) or "-"
            desc = _escape_md(p.description) if p.description else "-"
            lines.append(f"| `{_escape_md(p.name)}` | {args} | {desc} |")
    lines.append("")

    server_findings = [f for f in report.findings if f.tool_name is None]
    if server_findings:
        lines += ["## Server Issues", ""]
        for f in sorted_findings(server_findings):
            lines.append(f"- {SEVERITY_ICONS[f.severity]} {f.message}")
        lines.append("")

    fixes = rules_to_fix(report.findings)
    if fixes:
        lines += ["## Remediation", ""]
        for rule in fixes:
            lines.append(f"- **{rule.title}**: {' '.join(rule.remediation)}")
        lines.append("")
    return "\n".join(lines)


# Console


def print_report(report: Report, console: Console) -> None:
    snap = report.snapshot
    title = snap.server_name or report.target
    version = f" v{snap.server_version}" if snap.server_version else ""
    console.rule(escape(f"{title}{version}"))
    console.print(f"Target: {escape(report.target)}")
    if snap.transport:
        console.print(f"Transport: {snap.transport.value}")
    health = _health_text(snap)
    if health:
        style = "green" if snap.health and snap.health.available else "red"
        console.print(f"/health: [{style}]{escape(health)}[/{style}]")

    if snap.tools_error:
        console.print(f"[red]Tools unavailable: {escape(snap.tools_error)}[/red]")
    table = Table(title=f"Tools ({len(snap.tools)}, {_ms(snap.tools_elapsed_ms)})")
    table.add_column("Name")
    table.add_column("Description")
    table.add_column("Inputs")
    table.add_column("Issues", justify="right")
    if snap.tools:
        for tool in snap.tools:
            desc = tool.description or ""
            issues = sum(1 for f in report.findings if f.tool_name == tool.name)
            table.add_row(
                escape(tool.name),
                escape((desc[:80] + "...") if len(desc) > 80 else desc),
                escape(inputs_summary(tool)),
                str(issues) if issues else "",
            )
    else:
        table.add_row("-", "No tools discovered", "", "")
    console.print(table)

    resources = capability_count(snap.resources, snap.resources_supported)
    prompts = capability_count(snap.prompts, snap.prompts_supported)
    console.print(f"Resources: {resources}" + (f" ({_ms(snap.resources_elapsed_ms)})" if snap.resources_supported else ""))
    console.print(f"Prompts: {prompts}" + (f" ({_ms(snap.prompts_elapsed_ms)})" if snap.prompts_supported else ""))

    if report.findings:
        ftable = Table(title="Findings")
        ftable.add_column("Severity")
        ftable.add_column("Location")
        ftable.add_column("Rule")
        ftable.add_column("Message")
        for f in sorted_findings(report.findings):
            style = SEVERITY_STYLES[f.severity]
            ftable.add_row(f"[{style}]{f.severity.value}[/{style}]", escape(f.location), RULES[f.rule_id].title, escape(f.message))
        console.print(ftable)
        console.print("How to fix:")
        for rule in rules_to_fix(report.findings):
            console.print(f"  {escape(rule.title)}: {escape(' '.join(rule.remediation))}")
    else:
        console.print("[green]No findings[/green]")

    summary = report.summary
    console.print(
        f"Summary: {summary['tools']} tools, {summary['error']} errors, "
        f"{summary['warning']} warnings, {summary['info']} info"
    )


def print_auth_error(challenge: AuthChallenge, console: Console) -> None:
    console.print(f"[red]Authentication required (HTTP {challenge.status_code}): {escape(challenge.message)}[/red]")
    if challenge.www_authenticate_header:
        console.print(f"WWW-Authenticate: {escape(challenge.www_authenticate_header)}")
    console.print(OAUTH_HINT)
