from __future__ import annotations

import html
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from html.parser import HTMLParser

from .models import EventType

_COMMON_PLACEHOLDERS = frozenset(
    {
        "student_name",
        "student_email",
        "student_phone",
        "amount",
        "due_date",
        "college_name",
        "branch_name",
        "agency_name",
        "agency_email",
        "agency_phone",
        "view_link",
    }
)

ALLOWED_PLACEHOLDERS: dict[EventType, frozenset[str]] = {
    "due_soon": _COMMON_PLACEHOLDERS | {"payment_instructions"},
    "overdue": _COMMON_PLACEHOLDERS | {"payment_instructions"},
    "payment_received": _COMMON_PLACEHOLDERS | {"payment_reference"},
}

ALLOWED_TAGS = frozenset(
    {
        "p", "br", "hr", "strong", "em", "b", "i", "u", "a",
        "ul", "ol", "li", "h1", "h2", "h3", "h4", "h5", "h6",
        "div", "span", "table", "thead", "tbody", "tr", "td", "th",
    }
)
ALLOWED_ATTRIBUTES = frozenset({"href", "style", "class"})

# Removed together with their content whatever the allow-list says.
_STRIPPED_BLOCK_TAGS = frozenset({"script", "style", "iframe", "object", "embed", "noscript", "template"})
_VOID_TAGS = frozenset({"br", "hr"})
_UNSAFE_URL_SCHEMES = ("javascript:", "vbscript:", "data:")
_UNSAFE_STYLE_MARKERS = ("expression(", "javascript:", "url(", "@import")

_MARKER_RE = re.compile(r"\{\{|\}\}")
_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_MARKER_PAIR_RE = re.compile(r"\{\{([a-z][a-z0-9_]*)\}\}")
_CONTROL_RE = re.compile(r"[\x00-\x20]+")
_SANITIZED_TAG_RE = re.compile(r'<[a-z0-9]+(?: [a-z]+="[^"]*")+>')
_CHECKED_ATTR_RE = re.compile(r' (href|style)="([^"]*)"')


class TemplateValidationError(ValueError):
    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid template")


@dataclass(frozen=True)
class TemplateContent:
    subject: str
    body_html: str


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body_html: str


def _scan_placeholders(text: str, *, field_name: str) -> tuple[list[str], list[str]]:
    names: list[str] = []
    problems: list[str] = []
    open_start: int | None = None
    open_end = 0
    for match in _MARKER_RE.finditer(text):
        if match.group() == "{{":
            if open_start is not None:
                problems.append(f"{field_name}: unclosed placeholder at position {open_start}")
            open_start = match.start()
            open_end = match.end()
            continue
        if open_start is None:
            problems.append(f"{field_name}: unmatched '}}}}' at position {match.start()}")
            continue
        name = text[open_end:match.start()]
        if _NAME_RE.match(name):
            names.append(name)
        else:
            problems.append(f"{field_name}: malformed placeholder '{{{{{name}}}}}'")
        open_start = None
    if open_start is not None:
        problems.append(f"{field_name}: unclosed placeholder at position {open_start}")
    return names, problems


def extract_placeholders(*texts: str) -> list[str]:
    seen: list[str] = []
    for text in texts:
        names, _ = _scan_placeholders(text, field_name="template")
        for name in names:
            if name not in seen:
                seen.append(name)
    return seen


def validate_template(subject: str, body_html: str, event_type: EventType) -> list[str]:
    """Return every problem found in a template; an empty list means it is usable."""
    problems: list[str] = []
    if not subject.strip():
        problems.append("subject: must not be blank")
    if not body_html.strip():
        problems.append("body_html: must not be blank")
    allowed = ALLOWED_PLACEHOLDERS.get(event_type, frozenset())
    for field_name, text in (("subject", subject), ("body_html", body_html)):
        names, syntax_problems = _scan_placeholders(text, field_name=field_name)
        problems.extend(syntax_problems)
        for name in names:
            if name not in allowed:
                problems.append(f"{field_name}: unknown placeholder '{{{{{name}}}}}' for {event_type}")
    return problems


def ensure_valid_template(subject: str, body_html: str, event_type: EventType) -> TemplateContent:
    problems = validate_template(subject, body_html, event_type)
    if problems:
        raise TemplateValidationError(problems)
    return TemplateContent(subject=subject.strip(), body_html=sanitize_html(body_html))


def _escape_html_value(value: object) -> str:
    escaped = html.escape(str(value), quote=True)
    return escaped.replace("{", "&#123;").replace("}", "&#125;")


def _escape_subject_value(value: object) -> str:
    flattened = " ".join(str(value).split())
    return flattened.replace("{{", "{ {").replace("}}", "} }")


def _substitute(text: str, data: Mapping[str, object], escape, *, field_name: str) -> str:
    names, problems = _scan_placeholders(text, field_name=field_name)
    if problems:
        raise TemplateValidationError(problems)
    missing = sorted({name for name in names if data.get(name) is None})
    if missing:
        raise TemplateValidationError(f"{field_name}: no value for '{{{{{name}}}}}'" for name in missing)
    return _MARKER_PAIR_RE.sub(lambda match: escape(data[match.group(1)]), text)


def render_template(template: TemplateContent, data: Mapping[str, object]) -> RenderedMessage:
    """Fill every placeholder with an escaped value inside the sanitized template markup.

    Markup only ever comes from the template itself; substituted values are
    entity-escaped, braces included, so they can neither add tags nor leave a
    placeholder marker in the sent body.
    """
    subject = _substitute(template.subject, data, _escape_subject_value, field_name="subject")
    body = _substitute(sanitize_html(template.body_html), data, _escape_html_value, field_name="body_html")
    return RenderedMessage(subject=subject.strip(), body_html=_recheck_substituted_attributes(body))


def _recheck_substituted_attributes(body_html: str) -> str:
    """Drop href/style attributes that only became unsafe once values were filled in.

    Runs over sanitizer output, where every attribute is written as
    ` name="escaped value"` and text never contains a raw `<`.
    """

    def _check_attr(match: re.Match[str]) -> str:
        name, value = match.group(1), html.unescape(match.group(2))
        if name == "href" and not _is_safe_url(value):
            return ""
        if name == "style" and not _is_safe_style(value):
            return ""
        return match.group(0)

    return _SANITIZED_TAG_RE.sub(lambda tag: _CHECKED_ATTR_RE.sub(_check_attr, tag.group(0)), body_html)


def _is_safe_url(value: str) -> bool:
    compact = _CONTROL_RE.sub("", value).lower()
    return not compact.startswith(_UNSAFE_URL_SCHEMES)


def _is_safe_style(value: str) -> bool:
    compact = _CONTROL_RE.sub("", value).lower()
    return not any(marker in compact for marker in _UNSAFE_STYLE_MARKERS)


class _AllowListSanitizer(HTMLParser):
    def __init__(self, *, allowed_tags: frozenset[str], allowed_attributes: frozenset[str]) -> None:
        super().__init__(convert_charrefs=True)
        self._allowed_tags = allowed_tags - _STRIPPED_BLOCK_TAGS
        self._allowed_attributes = allowed_attributes
        self._parts: list[str] = []
        self._skip_depth = 0

    def result(self) -> str:
        return "".join(self._parts)

    def _render_attrs(self, attrs: list[tuple[str, str | None]]) -> str:
        rendered: list[str] = []
        for raw_name, raw_value in attrs:
            name = raw_name.lower()
            if name.startswith("on") or name not in self._allowed_attributes:
                continue
            value = raw_value or ""
            if name == "href" and not _is_safe_url(value):
                continue
            if name == "style" and not _is_safe_style(value):
                continue
            rendered.append(f' {name}="{html.escape(value, quote=True)}"')
        return "".join(rendered)

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _STRIPPED_BLOCK_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth or tag not in self._allowed_tags:
            return
        self._parts.append(f"<{tag}{self._render_attrs(attrs)}>")

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _STRIPPED_BLOCK_TAGS or self._skip_depth or tag not in self._allowed_tags:
            return
        self._parts.append(f"<{tag}{self._render_attrs(attrs)}>")

    def handle_endtag(self, tag: str) -> None:
        if tag in _STRIPPED_BLOCK_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in self._allowed_tags or tag in _VOID_TAGS:
            return
        self._parts.append(f"</{tag}>")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        self._parts.append(html.escape(data, quote=False))


def sanitize_html(
    value: str,
    *,
    allowed_tags: Iterable[str] = ALLOWED_TAGS,
    allowed_attributes: Iterable[str] = ALLOWED_ATTRIBUTES,
) -> str:
    """Keep only allow-listed tags and attributes; script-bearing content never survives."""
    parser = _AllowListSanitizer(
        allowed_tags=frozenset(tag.lower() for tag in allowed_tags),
        allowed_attributes=frozenset(attr.lower() for attr in allowed_attributes),
    )
    parser.feed(value)
    parser.close()
    return parser.result()


def format_amount(amount: float) -> str:
    return f"${amount:,.2f}"


def format_due_date(value: date) -> str:
    return f"{value.day} {value.strftime('%B')} {value.year}"
