"""
Rule-based detection of "list the X" queries.

A high-confidence match lets the orchestrator answer from cached reference
data without an intent-analysis model call. Rules are checked in a fixed
order and the first match wins; no network access happens here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence, Tuple, assert_never

from api.schemas.query import CollectionMatch, Confidence, EntityKind

_LIST_VERBS = r"^(?:list|show(?: me)?|get|display|all)\s+(?:all\s+)?(?:of\s+)?(?:the\s+)?"
_WHAT = r"^what\s+(?:are\s+)?(?:all\s+)?(?:the\s+)?"
# A collection noun used as a qualifier ("user stories", "project bugs") names work items
_NOT_QUALIFIER = r"(?!\s+(?:stor(?:y|ies)|bugs?|tasks?|features?|epics?|(?:work\s+)?items?)\b)"


@dataclass(frozen=True)
class CollectionRule:
    kind: EntityKind
    patterns: Tuple[re.Pattern, ...]
    phrases: Tuple[str, ...]
    keywords: Tuple[str, ...]

    def matches(self, text: str) -> bool:
        return text in self.phrases or any(pattern.search(text) for pattern in self.patterns)


def _compile(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


RULES: Sequence[CollectionRule] = (
    CollectionRule(
        kind=EntityKind.PROJECTS,
        patterns=_compile(_LIST_VERBS + r"projects?\b" + _NOT_QUALIFIER, _WHAT + r"projects\b"),
        phrases=("projects", "list projects", "show me projects", "all projects"),
        keywords=("projects", "list"),
    ),
    CollectionRule(
        kind=EntityKind.TEAMS,
        patterns=_compile(_LIST_VERBS + r"(?:teams?|boards?)\b" + _NOT_QUALIFIER, _WHAT + r"(?:teams|boards)\b"),
        phrases=("teams", "boards", "list teams", "show me teams"),
        keywords=("teams", "boards"),
    ),
    CollectionRule(
        kind=EntityKind.USERS,
        patterns=_compile(
            _LIST_VERBS + r"(?:users?|people|members?|team members?)\b" + _NOT_QUALIFIER,
            _WHAT + r"(?:users|people|members|team members)\b",
            r"who(?:'s| is) in (?:the )?(?:org|organization|team)\b",
        ),
        phrases=("users", "people", "team members", "who is in the org"),
        keywords=("users", "people", "members"),
    ),
    CollectionRule(
        kind=EntityKind.STATES,
        patterns=_compile(
            _LIST_VERBS + r"(?:work item\s+)?states?\b" + _NOT_QUALIFIER,
            _WHAT + r"(?:work item\s+)?states\b",
            r"what states? (?:are )?(?:available|exist)",
            r"available states",
        ),
        phrases=("states",),
        keywords=("states", "available"),
    ),
    CollectionRule(
        kind=EntityKind.TYPES,
        patterns=_compile(
            _LIST_VERBS + r"(?:work item\s+)?types?\b" + _NOT_QUALIFIER,
            _WHAT + r"(?:work item\s+)?types\b",
            r"what types? (?:of work items? )?(?:are )?(?:available|exist)",
            r"available (?:work item\s+)?types",
            r"what.*work item types",
        ),
        phrases=("types",),
        keywords=("types", "work item"),
    ),
    CollectionRule(
        kind=EntityKind.TAGS,
        patterns=_compile(
            _LIST_VERBS + r"tags?\b" + _NOT_QUALIFIER,
            _WHAT + r"tags\b",
            r"what tags? (?:are )?(?:available|exist|being used)",
            r"available tags",
        ),
        phrases=("tags",),
        keywords=("tags", "available"),
    ),
)


def normalize(query: str) -> str:
    return " ".join(query.lower().split()).rstrip("?!.")


def detect(query: str) -> CollectionMatch:
    """Classify ``query`` as a collection listing request, or ``none`` with low confidence."""
    text = normalize(query)
    for rule in RULES:
        if rule.matches(text):
            return CollectionMatch(type=rule.kind, confidence=Confidence.HIGH, keywords=list(rule.keywords))
    return CollectionMatch(type=EntityKind.NONE, confidence=Confidence.LOW, keywords=[])


def _label(entry: Any) -> str:
    if isinstance(entry, str):
        return entry
    return str(entry.get("name") or entry.get("displayName") or "Unknown")


def format_collection_context(kind: EntityKind, items: Sequence[Mapping[str, Any]]) -> str:
    """Render a collection as numbered lines for the synthesis prompt."""
    if not items:
        return f"No {kind.value} found."

    lines: List[str] = []
    if kind is EntityKind.PROJECTS:
        lines.append("Projects in the organization:")
        for idx, project in enumerate(items, 1):
            line = f"{idx}. {_label(project)}"
            if project.get("description"):
                line += f" - {project['description']}"
            lines.append(f"{line} (State: {project.get('state') or 'Active'})")
    elif kind is EntityKind.TEAMS:
        lines.append("Teams/Boards in the organization:")
        lines.extend(f"{idx}. {_label(team)}" for idx, team in enumerate(items, 1))
    elif kind is EntityKind.USERS:
        lines.append("Users in the organization:")
        for idx, user in enumerate(items, 1):
            line = f"{idx}. {_label(user)}"
            email = user.get("uniqueName") or user.get("email")
            lines.append(f"{line} <{email}>" if email else line)
    elif kind is EntityKind.STATES:
        lines.append("Available work item states:")
        lines.extend(f"{idx}. {_label(state)}" for idx, state in enumerate(items, 1))
    elif kind is EntityKind.TYPES:
        lines.append("Available work item types:")
        lines.extend(f"{idx}. {_label(work_item_type)}" for idx, work_item_type in enumerate(items, 1))
    elif kind is EntityKind.TAGS:
        lines.append("Tags used in work items:")
        lines.extend(f"{idx}. {_label(tag)}" for idx, tag in enumerate(items, 1))
    elif kind is EntityKind.WORK_ITEMS or kind is EntityKind.NONE:
        raise ValueError(f"{kind.value} is not a collection kind")
    else:
        assert_never(kind)

    header = f'<collection_data type="{kind.value}" count="{len(items)}">'
    return "\n".join([header, *lines, "</collection_data>"])


def snapshot_category(kind: EntityKind) -> str:
    """MetadataSnapshot attribute holding the given collection."""
    if kind is EntityKind.PROJECTS:
        return "projects"
    if kind is EntityKind.TEAMS:
        return "teams"
    if kind is EntityKind.USERS:
        return "users"
    if kind is EntityKind.STATES:
        return "states"
    if kind is EntityKind.TYPES:
        return "types"
    if kind is EntityKind.TAGS:
        return "tags"
    if kind is EntityKind.WORK_ITEMS or kind is EntityKind.NONE:
        raise ValueError(f"{kind.value} is not a collection kind")
    assert_never(kind)

