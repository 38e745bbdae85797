# concierge/capture_extractor.py

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from concierge.base_utils import BaseUtils
from concierge.directive_parser import capture_type_from_value
from concierge.entities import (
    CaptureEvent,
    CaptureType,
    Directive,
    DirectiveAction,
    DirectivePayload,
    MessageChunk,
)

logger = logging.getLogger("concierge")


DEFAULT_LIFE_EVENT_TERMS: Tuple[str, ...] = (
    "trip", "travel", "vacation", "wedding", "birthday", "anniversary",
    "graduation", "honeymoon", "holiday", "party", "concern", "sensitive",
    "allergy", "moving", "new job", "pregnan", "baby", "celebration",
    "date night", "interview", "reunion", "festival", "gift",
)

# action identifier -> capture type it denotes
DEFAULT_ACTION_VOCABULARY: Dict[str, CaptureType] = {
    "Create_Meaningful_Event": CaptureType.MEANINGFUL_EVENT,
    "Update_Contact_Profile": CaptureType.PROFILE_ENRICHMENT,
    "Create_Contact": CaptureType.CONTACT_CREATED,
}

# layer-1 bodies longer than this survive the quality filter without a keyword
MIN_STRUCTURED_BODY = 12

LABEL_PREFIX = {
    CaptureType.MEANINGFUL_EVENT: "Event Captured",
    CaptureType.PROFILE_ENRICHMENT: "Profile Updated",
    CaptureType.CONTACT_CREATED: "New Contact Created",
}

_PREFIX_RE = re.compile(r"^\s*(?:Event|Profile)\s+(?:Captured|Updated)\s*:\s*", re.I)

_PAREN_MARKER_RE = re.compile(
    r"\(\s*(?:(?P<kind>Event|Profile)\s+)?(?P<verb>Captured|Updated)\s*:\s*(?P<summary>[^()]+?)\s*\)",
    re.I,
)
_BARE_MARKER_RE = re.compile(
    r"\b(?P<kind>Event|Profile)\s+(?P<verb>Captured|Updated)\s*:\s*(?P<summary>[^\n]+?)\s*(?:[.!?](?=\s|$)|\n|$)",
    re.I,
)

# flat {...} fragments that mention a captured marker
_CAPTURED_FRAGMENT_RE = re.compile(r"\{[^{}]*?[\"']?captured[\"']?\s*:[^{}]*\}", re.I)

_ASIDE_RE = re.compile(r"\(\s*(?:uiDirective\b[^()]*|Note\s*:[^()]*)\)", re.I)
_DIRECTIVE_NAMES_RE = re.compile(
    r"\b(?:uiDirective|" + "|".join(a.value for a in DirectiveAction) + r")\b"
)


@dataclass(frozen=True)
class CaptureRule:
    """
    One natural-language confirmation pattern. `template` is formatted with the
    match's named groups (e.g. "Event Captured: {summary}").
    """
    pattern: Pattern[str]
    type: CaptureType
    template: str

    def match(self, text: str) -> Optional[CaptureEvent]:
        m = self.pattern.search(text or "")
        if not m:
            return None
        groups = {k: (v or "").strip(" ,;:") for k, v in m.groupdict().items()}
        try:
            label = self.template.format(**groups).strip()
        except (KeyError, IndexError):
            label = self.template
        if not label:
            return None
        return CaptureEvent(type=self.type, label=label, layer=4)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureRule":
        ctype = capture_type_from_value(data.get("type"))
        if ctype is None or not data.get("pattern"):
            raise ValueError(f"Invalid capture rule: {data!r}")
        return cls(
            pattern=re.compile(str(data["pattern"]), re.I),
            type=ctype,
            template=str(data.get("template") or LABEL_PREFIX[ctype]),
        )


DEFAULT_CAPTURE_RULES: Tuple[CaptureRule, ...] = (
    CaptureRule(
        re.compile(
            r"\bI(?:'ve| have)\s+(?:noted|made a note of|saved|recorded|jotted down)\s+"
            r"(?:that\s+)?(?:your|you(?:'re| are| have)?)\s+(?P<summary>[^.!?\n]{3,80})",
            re.I,
        ),
        CaptureType.MEANINGFUL_EVENT,
        "Event Captured: {summary}",
    ),
    CaptureRule(
        re.compile(
            r"\bI(?:'ll| will)\s+(?:remember|keep in mind)\s+(?:that\s+)?(?:your\s+)?(?P<summary>[^.!?\n]{3,80})",
            re.I,
        ),
        CaptureType.MEANINGFUL_EVENT,
        "Event Captured: {summary}",
    ),
    CaptureRule(
        re.compile(
            r"\bI(?:'ve| have)\s+updated\s+your\s+(?P<summary>(?:profile|skin type|preferences)[^.!?\n]{0,60})",
            re.I,
        ),
        CaptureType.PROFILE_ENRICHMENT,
        "Profile Updated: {summary}",
    ),
)


@dataclass
class CaptureExtraction:
    captures: List[CaptureEvent] = field(default_factory=list)
    display_text: str = ""
    directive: Optional[Directive] = None


def _marker_event(kind: Optional[str], summary: str, layer: int) -> Optional[CaptureEvent]:
    summary = (summary or "").strip().rstrip(".!?").strip()
    if not summary:
        return None
    if kind and kind.lower() == "profile":
        return CaptureEvent(CaptureType.PROFILE_ENRICHMENT, f"Profile Updated: {summary}", layer=layer)
    return CaptureEvent(CaptureType.MEANINGFUL_EVENT, f"Event Captured: {summary}", layer=layer)


class CaptureExtractor(BaseUtils):
    """
    Detects "customer data was captured" notifications in an agent reply.

    Layers are consulted in trust order (1 = structured, 4 = free text); a
    capture type satisfied by a higher layer is never overwritten by a lower one.
    """

    def __init__(
        self,
        life_event_terms: Optional[Iterable[str]] = None,
        action_vocabulary: Optional[Dict[str, CaptureType]] = None,
        rules: Optional[Sequence[CaptureRule]] = None,
        min_structured_body: int = MIN_STRUCTURED_BODY,
    ):
        self.life_event_terms = tuple(t.lower() for t in (life_event_terms or DEFAULT_LIFE_EVENT_TERMS))
        self.action_vocabulary = dict(action_vocabulary or DEFAULT_ACTION_VOCABULARY)
        self.rules: List[CaptureRule] = list(DEFAULT_CAPTURE_RULES if rules is None else rules)
        self.min_structured_body = min_structured_body

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "CaptureExtractor":
        """
        Build from a capture policy dict (see settings.load_capture_policy).
        Missing keys keep the defaults.
        """
        vocab = None
        if isinstance(policy.get("action_vocabulary"), dict):
            vocab = {}
            for action_id, type_name in policy["action_vocabulary"].items():
                ctype = capture_type_from_value(type_name)
                if ctype is not None:
                    vocab[str(action_id)] = ctype
        rules = None
        if isinstance(policy.get("capture_rules"), list):
            rules = [CaptureRule.from_dict(r) for r in policy["capture_rules"] if isinstance(r, dict)]
        return cls(
            life_event_terms=policy.get("life_event_terms") or None,
            action_vocabulary=vocab,
            rules=rules,
            min_structured_body=int(policy.get("min_structured_body", MIN_STRUCTURED_BODY)),
        )

    # -----------------------
    # Public API
    # -----------------------

    def extract(
        self,
        chunks: Sequence[MessageChunk],
        directive: Optional[Directive],
        display_text: str,
    ) -> CaptureExtraction:
        raw_text = "".join(c.text for c in chunks or [])
        display_text = display_text or ""

        layered: List[List[CaptureEvent]] = [
            self.structured_captures(directive, raw_text),
            self.marker_captures(display_text),
            self.action_captures(chunks or []),
        ]

        survivors = self._merge_layers(layered)
        if not survivors:
            survivors = self._merge_layers([[], [], [], self.rule_captures(display_text)])

        cleaned = self.clean_display_text(display_text)

        if survivors:
            logger.info(f"[captures] {len(survivors)} capture(s): {[c.label for c in survivors]}")
        if directive is not None:
            directive = dataclasses.replace(
                directive,
                payload=dataclasses.replace(directive.payload, captures=list(survivors)),
            )
        elif survivors:
            directive = Directive(
                action=DirectiveAction.CAPTURE_ONLY,
                payload=DirectivePayload(captures=list(survivors)),
            )
        return CaptureExtraction(captures=survivors, display_text=cleaned, directive=directive)

    # -----------------------
    # Layers
    # -----------------------

    def structured_captures(self, directive: Optional[Directive], raw_text: str) -> List[CaptureEvent]:
        out: List[CaptureEvent] = []
        if directive is not None:
            out.extend(dataclasses.replace(c, layer=1) for c in directive.payload.captures)

        for m in _CAPTURED_FRAGMENT_RE.finditer(raw_text or ""):
            data = self.load_fault_tolerant_json(m.group(0))
            if not isinstance(data, dict) or not data.get("captured"):
                continue
            ctype = capture_type_from_value(data.get("type") or data.get("eventType") or data.get("captureType"))
            if ctype is None:
                continue
            label = data.get("label") or data.get("summary") or data.get("description")
            if isinstance(label, str) and label.strip():
                label = label.strip()
            else:
                label = self._synthesize_label(ctype, data)
            out.append(CaptureEvent(type=ctype, label=label, layer=1))
        return out

    def marker_captures(self, display_text: str) -> List[CaptureEvent]:
        out: List[CaptureEvent] = []
        remaining = display_text or ""
        for m in _PAREN_MARKER_RE.finditer(remaining):
            e = _marker_event(m.group("kind"), m.group("summary"), layer=2)
            if e is not None:
                out.append(e)
        remaining = _PAREN_MARKER_RE.sub(" ", remaining)
        for m in _BARE_MARKER_RE.finditer(remaining):
            e = _marker_event(m.group("kind"), m.group("summary"), layer=2)
            if e is not None:
                out.append(e)
        return out

    def action_captures(self, chunks: Sequence[MessageChunk]) -> List[CaptureEvent]:
        out: List[CaptureEvent] = []
        for chunk in chunks:
            if chunk.is_plain_text:
                continue
            normalized = re.sub(r"[\s\-]+", "_", chunk.text or "").lower()
            for action_id, ctype in self.action_vocabulary.items():
                if action_id.lower() not in normalized:
                    continue
                summary = self._summary_after_action(chunk.text, action_id)
                prefix = LABEL_PREFIX[ctype]
                label = f"{prefix}: {summary}" if summary else prefix
                out.append(CaptureEvent(type=ctype, label=label, layer=3))
        return out

    def rule_captures(self, display_text: str) -> List[CaptureEvent]:
        out: List[CaptureEvent] = []
        for rule in self.rules:
            e = rule.match(display_text)
            if e is not None:
                out.append(e)
        return out

    # -----------------------
    # Dedup + quality filter
    # -----------------------

    def _merge_layers(self, layered: List[List[CaptureEvent]]) -> List[CaptureEvent]:
        result: List[CaptureEvent] = []
        satisfied: set = set()
        for layer_no, events in enumerate(layered, start=1):
            contributed: set = set()
            for e in events:
                if e.type in satisfied:
                    continue
                if layer_no > 1 and e.type in contributed:
                    continue
                if e in result:
                    continue
                if not self.passes_quality_filter(e):
                    logger.info(f"[captures] Filtered low-quality {e.type.value} (layer {e.layer}): {e.label!r}")
                    continue
                result.append(e)
                contributed.add(e.type)
            satisfied |= contributed
        return result

    def passes_quality_filter(self, event: CaptureEvent) -> bool:
        if event.type != CaptureType.MEANINGFUL_EVENT:
            return True
        body = _PREFIX_RE.sub("", event.label).strip()
        lowered = body.lower()
        if any(term in lowered for term in self.life_event_terms):
            return True
        return event.layer == 1 and len(body) > self.min_structured_body

    # -----------------------
    # Display text cleanup
    # -----------------------

    def clean_display_text(self, text: str) -> str:
        if not text:
            return ""
        cleaned = _CAPTURED_FRAGMENT_RE.sub(" ", text)
        cleaned = _PAREN_MARKER_RE.sub(" ", cleaned)
        cleaned = _BARE_MARKER_RE.sub(" ", cleaned)
        cleaned = _ASIDE_RE.sub(" ", cleaned)
        cleaned = _DIRECTIVE_NAMES_RE.sub(" ", cleaned)
        for action_id in self.action_vocabulary:
            cleaned = re.sub(re.escape(action_id), " ", cleaned, flags=re.I)
        cleaned = re.sub(r"\(\s*\)", " ", cleaned)
        cleaned = re.sub(r"[ \t]+", " ", cleaned)
        cleaned = re.sub(r" *\n *", "\n", cleaned)
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        cleaned = re.sub(r"\s+([.,!?;:])", r"\1", cleaned)
        return cleaned.strip()

    # -----------------------
    # Helpers
    # -----------------------

    def _synthesize_label(self, ctype: CaptureType, data: Dict[str, Any]) -> str:
        prefix = LABEL_PREFIX[ctype]
        detail = data.get("event") or data.get("field") or data.get("value") or data.get("name")
        if isinstance(detail, str) and detail.strip():
            return f"{prefix}: {detail.strip()}"
        return prefix

    def _summary_after_action(self, text: str, action_id: str) -> str:
        fragment = self.load_fault_tolerant_json(text[text.find("{"):]) if "{" in (text or "") else None
        if isinstance(fragment, dict):
            for key in ("label", "summary", "description", "eventDescription"):
                value = fragment.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()

        pattern = re.escape(action_id).replace("_", r"[\s_\-]+")
        m = re.search(pattern + r"\s*:\s*([^\n{]+)", text or "", re.I)
        if m:
            return m.group(1).strip().rstrip(".")
        return ""
