"""
Quality rules evaluated over a server's tool list.

Every rule is a pure function of the tool definitions: no I/O, no clock, no
hidden state, so ``evaluate`` returns the same ordered findings for the same
input. Missing or malformed fields are treated as "missing", never as errors.

Ordering:
- Server-level findings first (duplicate names, tool count, similar descriptions).
- Then per-tool findings in tool order; within a tool, rules run in the order of
  ``TOOL_RULES``.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Finding, Severity, ToolDef

MAX_TOOLS = 30
MAX_REQUIRED_INPUTS = 5
SIMILARITY_THRESHOLD = 0.70
MIN_SIMILARITY_WORDS = 3


@dataclass(frozen=True)
class RuleSpec:
    id: str
    title: str
    severity: Severity
    remediation: List[str] = field(default_factory=list)


RULES: Dict[str, RuleSpec] = {
    spec.id: spec
    for spec in (
        RuleSpec(
            "duplicate-tool-name",
            "Duplicate tool names",
            Severity.error,
            ["Give every tool a unique name; clients key tool calls by name."],
        ),
        RuleSpec(
            "too-many-tools",
            "Too many tools",
            Severity.warning,
            ["Split the server or merge closely related tools so a model can choose reliably."],
        ),
        RuleSpec(
            "similar-descriptions",
            "Near-duplicate tool descriptions",
            Severity.warning,
            ["Describe what distinguishes each tool so a model can tell them apart."],
        ),
        RuleSpec(
            "missing-tool-description",
            "Tool without description",
            Severity.warning,
            ["Add a description stating what the tool does and when to use it."],
        ),
        RuleSpec(
            "missing-input-description",
            "Input without description",
            Severity.warning,
            ["Describe every input property, including format and allowed values."],
        ),
        RuleSpec(
            "too-many-required-inputs",
            "Too many required inputs",
            Severity.warning,
            ["Give inputs sensible defaults or split the tool."],
        ),
        RuleSpec(
            "dangerous-tool",
            "Potentially destructive or privileged tool",
            Severity.warning,
            ["Mark the tool with destructiveHint / require confirmation, and constrain its inputs."],
        ),
        RuleSpec(
            "pii-handling",
            "Tool may handle personal data",
            Severity.info,
            ["Document how personal data is stored, logged and shared."],
        ),
        RuleSpec(
            "missing-output-schema",
            "Tool without output schema",
            Severity.info,
            ["Declare an outputSchema so clients can validate structured results."],
        ),
    )
}

DANGEROUS_WORDS = frozenset(
    {
        "rm",
        "rmdir",
        "delete",
        "remove",
        "unlink",
        "exec",
        "shell",
        "bash",
        "eval",
        "sudo",
        "root",
        "chmod",
        "chown",
        "kill",
        "terminate",
        "drop",
        "truncate",
        "destroy",
        "wipe",
        "purge",
        "erase",
    }
)

PII_WORDS = frozenset(
    {
        # identifiers
        "email",
        "phone",
        "mobile",
        "address",
        "ssn",
        "passport",
        "firstname",
        "lastname",
        "surname",
        "fullname",
        "username",
        # financial
        "credit",
        "iban",
        "bank",
        "salary",
        "income",
        "tax",
        # health
        "patient",
        "medical",
        "diagnosis",
        "prescription",
        "insurance",
        # biometric
        "biometric",
        "fingerprint",
        "retina",
        # location
        "location",
        "gps",
        "geolocation",
        "latitude",
        "longitude",
        "zipcode",
        "postcode",
        # credentials
        "password",
        "passwd",
        "credential",
        "credentials",
        # demographic
        "birthday",
        "birthdate",
        "dob",
        "age",
        "gender",
        "ethnicity",
        "religion",
        "nationality",
    }
)

STOP_WORDS = frozenset(
    """
    a about above after again against all also am an and any are as at be because been before being below between
    both but by can could did do does doing down during each either few for from further had has have having he
    her here hers him his how i if in into is it its itself just may me might more most must my no nor not of off
    on once only or other our ours out over own same she should so some such than that the their theirs them then
    there these they this those through to too under until up upon use used uses using very via was we were what
    when where which while who whom why will with within without would you your yours
    """.split()
)

_LOWER_UPPER = re.compile(r"([a-z0-9])([A-Z])")
_ACRONYM_WORD = re.compile(r"([A-Z]+)([A-Z][a-z])")
_APOSTROPHES = re.compile(r"['\u2019]")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def tokenize(text: Optional[str]) -> List[str]:
    """Split identifiers and prose into lowercase word tokens.

    Handles camelCase, PascalCase, snake_case and kebab-case, and splits an
    acronym from a following capitalised word (``XMLParser`` -> ``xml``, ``parser``).
    """

    if not text:
        return []
    spaced = _LOWER_UPPER.sub(r"\1 \2", text)
    spaced = _ACRONYM_WORD.sub(r"\1 \2", spaced)
    return [tok for tok in _NON_ALNUM.split(spaced.lower()) if tok]


def content_words(description: Optional[str]) -> frozenset[str]:
    if not description:
        return frozenset()
    words = _NON_ALNUM.split(_APOSTROPHES.sub("", description.lower()))
    return frozenset(w for w in words if w and w not in STOP_WORDS)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def _has_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _finding(rule_id: str, message: str, tool_name: Optional[str] = None, input_name: Optional[str] = None) -> Finding:
    return Finding(
        rule_id=rule_id,
        severity=RULES[rule_id].severity,
        message=message,
        tool_name=tool_name,
        input_name=input_name,
    )


# Server-level rules


def check_duplicate_names(tools: Sequence[ToolDef]) -> List[Finding]:
    counts = Counter(tool.name for tool in tools)
    return [
        _finding("duplicate-tool-name", f"Duplicate tool name (appears {count} times)", tool_name=name)
        for name, count in counts.items()
        if count > 1
    ]


def check_tool_count(tools: Sequence[ToolDef]) -> List[Finding]:
    if len(tools) <= MAX_TOOLS:
        return []
    return [
        _finding(
            "too-many-tools",
            f"Server exposes {len(tools)} tools. Consider reducing to {MAX_TOOLS} or fewer for better LLM accuracy",
        )
    ]


def similarity_percent(score: float) -> int:
    """Whole percent, halves rounded up."""
    return int(score * 100 + 0.5)


def check_similar_descriptions(tools: Sequence[ToolDef]) -> List[Finding]:
    """Flag tool pairs whose descriptions share at least 70% of their content words.

    Descriptions with fewer than three content words are not scored at all.
    Results are ordered by similarity, highest first; ties keep pair order.
    """

    words = [(tool, content_words(tool.description)) for tool in tools]
    scored = []
    for (tool_a, words_a), (tool_b, words_b) in combinations(words, 2):
        if len(words_a) < MIN_SIMILARITY_WORDS or len(words_b) < MIN_SIMILARITY_WORDS:
            continue
        score = jaccard(words_a, words_b)
        if score >= SIMILARITY_THRESHOLD:
            scored.append((score, tool_a.name, tool_b.name))
    scored.sort(key=lambda item: item[0], reverse=True)
    return [
        _finding(
            "similar-descriptions",
            f'Similar descriptions detected between "{a}" and "{b}" ({similarity_percent(score)}% similar)',
        )
        for score, a, b in scored
    ]


# Per-tool rules


def check_tool_description(tool: ToolDef) -> List[Finding]:
    if _has_text(tool.description):
        return []
    return [_finding("missing-tool-description", "Missing tool description", tool_name=tool.name)]


def check_input_descriptions(tool: ToolDef) -> List[Finding]:
    findings = []
    for name, definition in tool.properties().items():
        if isinstance(definition, dict) and _has_text(definition.get("description")):
            continue
        findings.append(
            _finding("missing-input-description", "Missing input description", tool_name=tool.name, input_name=name)
        )
    return findings


def check_required_inputs(tool: ToolDef) -> List[Finding]:
    count = len(tool.required())
    if count <= MAX_REQUIRED_INPUTS:
        return []
    return [
        _finding(
            "too-many-required-inputs",
            f"Too many required inputs ({count}). Consider reducing to {MAX_REQUIRED_INPUTS} or fewer "
            "for better LLM accuracy",
            tool_name=tool.name,
        )
    ]


def dangerous_word(name: str) -> Optional[str]:
    for token in tokenize(name):
        if token in DANGEROUS_WORDS:
            return token
    return None


def check_dangerous_name(tool: ToolDef) -> List[Finding]:
    word = dangerous_word(tool.name)
    if word is None:
        return []
    return [_finding("dangerous-tool", f'Potentially dangerous tool detected (contains "{word}")', tool_name=tool.name)]


def pii_words(texts: Iterable[Optional[str]]) -> List[str]:
    """Personal-data terms found in ``texts``, unique, in order of first occurrence."""

    matches: List[str] = []
    for text in texts:
        for token in tokenize(text):
            if token in PII_WORDS and token not in matches:
                matches.append(token)
    return matches


def check_pii(tool: ToolDef) -> List[Finding]:
    matches = pii_words([tool.name, tool.description, *tool.properties().keys()])
    if not matches:
        return []
    return [_finding("pii-handling", f"May handle personal data ({', '.join(matches)})", tool_name=tool.name)]


def check_output_schema(tool: ToolDef) -> List[Finding]:
    if tool.output_schema:
        return []
    return [_finding("missing-output-schema", "Missing output schema", tool_name=tool.name)]


SERVER_RULES: List[Callable[[Sequence[ToolDef]], List[Finding]]] = [
    check_duplicate_names,
    check_tool_count,
    check_similar_descriptions,
]

TOOL_RULES: List[Callable[[ToolDef], List[Finding]]] = [
    check_tool_description,
    check_input_descriptions,
    check_required_inputs,
    check_dangerous_name,
    check_pii,
    check_output_schema,
]


def evaluate(tools: Sequence[ToolDef]) -> List[Finding]:
    findings: List[Finding] = []
    for server_rule in SERVER_RULES:
        findings.extend(server_rule(tools))
    for tool in tools:
        for tool_rule in TOOL_RULES:
            findings.extend(tool_rule(tool))
    return findings
