# concierge/directive_parser.py

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from concierge.base_utils import BaseUtils
from concierge.entities import (
    CaptureEvent,
    CaptureType,
    Directive,
    DirectiveAction,
    DirectivePayload,
    Product,
    RawAgentResponse,
)

logger = logging.getLogger("concierge")

# C0 controls except \t \n \r, DEL, zero-width chars and the BOM
_INVISIBLE_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F\u200B-\u200F\uFEFF]")

# Keys that make a bare top-level object look like a directive container
DIRECTIVE_KEYS = frozenset({
    "action",
    "payload",
    "products",
    "items",
    "productCarousel",
    "welcomeMessage",
    "product",
    "sceneContext",
    "scene",
    "setting",
    "backgroundPrompt",
    "captures",
})

PRODUCT_ID_ALTERNATES = ("productId", "sku", "productCode")


def _as_dict(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _payload_of(d: Dict[str, Any]) -> Dict[str, Any]:
    return _as_dict(d.get("payload"))


def _has_value(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    return str(value).strip() != ""


# -----------------------
# Action inference (ordered decision table)
# -----------------------

def has_product_array(d: Dict[str, Any]) -> bool:
    payload = _payload_of(d)
    carousel = _as_dict(d.get("productCarousel"))
    candidates = (
        payload.get("products"),
        payload.get("items"),
        d.get("products"),
        d.get("items"),
        carousel.get("products"),
    )
    return any(isinstance(c, list) for c in candidates)


def has_welcome_message(d: Dict[str, Any]) -> bool:
    return bool(_payload_of(d).get("welcomeMessage") or d.get("welcomeMessage"))


def has_single_product(d: Dict[str, Any]) -> bool:
    return bool(_payload_of(d).get("product") or d.get("product"))


def has_scene_hint(d: Dict[str, Any]) -> bool:
    payload = _payload_of(d)
    return bool(
        payload.get("sceneContext")
        or payload.get("scene")
        or d.get("sceneContext")
        or d.get("scene")
        or d.get("setting")
        or d.get("backgroundPrompt")
    )


def has_captures(d: Dict[str, Any]) -> bool:
    return isinstance(_payload_of(d).get("captures"), list) or isinstance(d.get("captures"), list)


# (rule name, shape predicate, inferred action) - first match wins
ACTION_INFERENCE_RULES: List[Tuple[str, Callable[[Dict[str, Any]], bool], DirectiveAction]] = [
    ("product_array", has_product_array, DirectiveAction.SHOW_PRODUCTS),
    ("welcome_message", has_welcome_message, DirectiveAction.WELCOME_SCENE),
    ("single_product", has_single_product, DirectiveAction.SHOW_PRODUCT),
    ("scene_hint", has_scene_hint, DirectiveAction.CHANGE_SCENE),
    ("captures_only", has_captures, DirectiveAction.CAPTURE_ONLY),
]


def infer_action(d: Dict[str, Any]) -> Optional[DirectiveAction]:
    """
    Resolve the directive action: an explicit, known `action` wins; otherwise
    the payload shape decides. Returns None when nothing matches.
    """
    explicit = DirectiveAction.parse(d.get("action"))
    if explicit is not None:
        return explicit
    if d.get("action"):
        logger.warning(f"[directive] Unknown action {d.get('action')!r}, inferring from payload shape")

    for name, predicate, action in ACTION_INFERENCE_RULES:
        if predicate(d):
            logger.debug(f"[directive] Inferred missing action '{action.value}' via rule '{name}'")
            return action
    return None


# -----------------------
# Product normalization
# -----------------------

def normalize_products(products: Any) -> List[Product]:
    """
    Copy the product dicts and make sure every one carries a non-empty string id.
    Synthetic positional ids are unique within the list.
    """
    if not isinstance(products, list):
        return []
    out: List[Product] = [dict(p) for p in products if isinstance(p, dict)]

    # explicit and alternate ids are all claimed before any synthetic id is handed out
    missing = []
    for i, p in enumerate(out):
        if _has_value(p.get("id")):
            p["id"] = str(p["id"]).strip()
            continue
        alt = next((p[k] for k in PRODUCT_ID_ALTERNATES if _has_value(p.get(k))), None)
        if alt is not None:
            p["id"] = str(alt).strip()
        else:
            missing.append(i)

    used = {p["id"] for i, p in enumerate(out) if i not in missing}
    for i in missing:
        p = out[i]
        synthetic = f"product-{i}"
        n = 1
        while synthetic in used:
            synthetic = f"product-{i}-{n}"
            n += 1
        p["id"] = synthetic
        used.add(synthetic)
    return out


def coerce_capture(item: Any, layer: int = 1) -> Optional[CaptureEvent]:
    if not isinstance(item, dict):
        return None
    ctype = capture_type_from_value(item.get("type") or item.get("eventType") or item.get("captureType"))
    if ctype is None:
        return None
    label = item.get("label") or item.get("summary") or item.get("description")
    if not isinstance(label, str) or not label.strip():
        return None
    return CaptureEvent(type=ctype, label=label.strip(), layer=layer)


def capture_type_from_value(value: Any) -> Optional[CaptureType]:
    if not isinstance(value, str):
        return None
    v = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return CaptureType(v)
    except ValueError:
        pass
    if "contact" in v:
        return CaptureType.CONTACT_CREATED
    if "profile" in v or "enrich" in v:
        return CaptureType.PROFILE_ENRICHMENT
    if "event" in v:
        return CaptureType.MEANINGFUL_EVENT
    return None


# -----------------------
# Structural scan used by the truncation repair
# -----------------------

def _scan_structure(text: str) -> Tuple[List[str], bool, int]:
    """
    Walk `text` tracking string state (with escapes) and the open {/[ stack.

    Returns (open_stack, in_string, last_element_end) where last_element_end is
    the index of the last '}' outside a string that is followed by a ',', or -1.
    """
    stack: List[str] = []
    in_str = False
    esc = False
    last_element_end = -1
    pending_close = -1
    for i, ch in enumerate(text):
        if esc:
            esc = False
            continue
        if in_str:
            if ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            pending_close = -1
        elif ch in "{[":
            stack.append(ch)
            pending_close = -1
        elif ch in "}]":
            if stack:
                stack.pop()
            pending_close = i if ch == "}" else -1
        elif ch == ",":
            if pending_close >= 0:
                last_element_end = pending_close
            pending_close = -1
        elif not ch.isspace():
            pending_close = -1
    return stack, in_str, last_element_end


def _loads(candidate: str) -> Tuple[Any, bool]:
    try:
        return json.loads(candidate), True
    except (ValueError, RecursionError):
        return None, False


class DirectiveParser(BaseUtils):
    """
    Turns raw agent text into a typed Directive.

    The agent output is unreliable: prose around the JSON, truncated JSON,
    alternate field names, missing `action`. `parse()` never raises; a missing
    directive is a normal outcome and the caller shows the text as-is.
    """

    max_embedded_scan = 64

    def sanitize(self, raw: str) -> str:
        return self.clean_triple_backticks(_INVISIBLE_CHARS_RE.sub("", raw or "")).strip()

    def parse(self, text: str) -> Optional[Directive]:
        try:
            parsed = self.try_parse_json(text)
            if parsed is None:
                return None
            return self.extract_directive(parsed)
        except Exception as e:
            logger.warning(f"[directive] Unexpected decode failure, treating as plain text: {e}")
            return None

    def parse_response(self, response: RawAgentResponse) -> Optional[Directive]:
        """
        Pre-structured directive metadata bypasses text decoding entirely.
        """
        md = _as_dict(response.metadata).get("uiDirective")
        if md:
            try:
                return self.extract_directive({"uiDirective": md})
            except Exception as e:
                logger.warning(f"[directive] Metadata directive rejected: {e}")
                return None
        return self.parse(response.full_text)

    # -----------------------
    # JSON location / repair
    # -----------------------

    def try_parse_json(self, text: str) -> Any:
        if not isinstance(text, str):
            return None
        clean = self.sanitize(text)
        if not clean:
            return None

        parsed, ok = _loads(clean)
        if ok:
            return parsed

        start = clean.find("{")
        if start == -1:
            return None
        end = clean.rfind("}")

        if end > start:
            candidate = clean[start:end + 1]
            parsed, ok = _loads(candidate)
            if ok:
                return parsed
        else:
            # no closing brace at all: fully truncated
            candidate = clean[start:]

        stack, in_str, _ = _scan_structure(candidate)
        if stack or in_str:
            return self._repair_truncated(candidate)

        # balanced but still invalid: stray braces in the surrounding prose
        return self._scan_embedded_objects(clean)

    def _repair_truncated(self, candidate: str) -> Any:
        stack, in_str, _ = _scan_structure(candidate)
        depth = stack.count("{")
        bracket_depth = stack.count("[")

        repaired = candidate
        if in_str:
            repaired = repaired.rstrip()
            # a dangling escape would swallow the closing quote
            repaired = re.sub(r"\\u[0-9a-fA-F]{0,3}$", "", repaired)
            trailing = len(repaired) - len(repaired.rstrip("\\"))
            if trailing % 2 == 1:
                repaired = repaired[:-1]
            repaired += '"'

        repaired = re.sub(r"[,:\s]+$", "", repaired)
        closed = repaired + "]" * max(0, bracket_depth) + "}" * max(0, depth)

        parsed, ok = _loads(closed)
        if ok:
            logger.warning(
                f"[directive] Repaired truncated JSON: closedString={in_str}, "
                f"brackets={bracket_depth}, braces={depth}"
            )
            return parsed

        # trim back to the last complete array element and re-balance
        _, _, last_element_end = _scan_structure(repaired)
        if last_element_end > 0:
            trimmed = repaired[:last_element_end + 1]
            trimmed_stack, trimmed_in_str, _ = _scan_structure(trimmed)
            if not trimmed_in_str:
                closers = "".join("]" if c == "[" else "}" for c in reversed(trimmed_stack))
                parsed, ok = _loads(trimmed + closers)
                if ok:
                    logger.warning("[directive] Repaired by trimming to last complete array element")
                    return parsed

        logger.debug("[directive] Truncated JSON could not be repaired")
        return None

    def _scan_embedded_objects(self, clean: str) -> Any:
        decoder = json.JSONDecoder()
        pos = clean.find("{")
        attempts = 0
        while pos != -1 and attempts < self.max_embedded_scan:
            attempts += 1
            try:
                obj, _ = decoder.raw_decode(clean, pos)
            except (ValueError, RecursionError):
                obj = None
            if isinstance(obj, dict) and ("uiDirective" in obj or DIRECTIVE_KEYS & obj.keys()):
                return obj
            pos = clean.find("{", pos + 1)
        return None

    # -----------------------
    # Container -> Directive
    # -----------------------

    def extract_directive(self, obj: Any) -> Optional[Directive]:
        if not isinstance(obj, dict):
            return None

        if "uiDirective" in obj:
            d = obj.get("uiDirective")
            if isinstance(d, str):
                # double-encoded by the agent
                d = self.try_parse_json(d)
            if not isinstance(d, dict) or not d:
                return None
        elif DIRECTIVE_KEYS & obj.keys():
            d = obj
        else:
            return None

        action = infer_action(d)
        if action is None:
            logger.warning(f"[directive] Could not infer action from directive keys: {sorted(d.keys())}")
            return None

        return Directive(action=action, payload=self.normalize_payload(d))

    def normalize_payload(self, d: Dict[str, Any]) -> DirectivePayload:
        """
        Map the alternate shapes the agent uses onto the canonical payload.
        The input is never mutated.
        """
        existing = _payload_of(d)
        carousel = _as_dict(d.get("productCarousel"))

        products = existing.get("products")
        if not isinstance(products, list):
            products = None
            for source, value in (
                ("items", d.get("items") if isinstance(d.get("items"), list) else existing.get("items")),
                ("root products", d.get("products")),
                ("productCarousel.products", carousel.get("products")),
            ):
                if isinstance(value, list):
                    logger.debug(f"[directive] Normalized '{source}' -> 'products'")
                    products = value
                    break
        if products is None:
            single = existing.get("product") or d.get("product")
            if isinstance(single, dict):
                products = [single]

        scene_context = existing.get("sceneContext") or existing.get("scene") or d.get("sceneContext") or d.get("scene")
        if isinstance(scene_context, str):
            scene_context = {"setting": scene_context}
        scene_context = dict(scene_context) if isinstance(scene_context, dict) else None
        for key in ("setting", "backgroundPrompt", "mood"):
            if _has_value(d.get(key)) and isinstance(d.get(key), str):
                scene_context = scene_context if scene_context is not None else {}
                scene_context.setdefault(key, d[key])

        checkout_data = existing.get("checkoutData") or d.get("checkoutData")
        checkout_data = dict(checkout_data) if isinstance(checkout_data, dict) else None
        if checkout_data is not None and isinstance(checkout_data.get("products"), list):
            checkout_data["products"] = normalize_products(checkout_data["products"])

        raw_captures = existing.get("captures")
        if not isinstance(raw_captures, list):
            raw_captures = d.get("captures") if isinstance(d.get("captures"), list) else []
        captures: List[CaptureEvent] = []
        for item in raw_captures:
            c = coerce_capture(item, layer=1)
            if c is not None and c not in captures:
                captures.append(c)

        suggested = existing.get("suggestedActions") or d.get("suggestedActions") or []
        if not isinstance(suggested, list):
            suggested = []

        order_confirmation = existing.get("orderConfirmation") or d.get("orderConfirmation")

        return DirectivePayload(
            products=normalize_products(products) if products is not None else None,
            scene_context=scene_context,
            checkout_data=checkout_data,
            welcome_message=self._str_or_none(existing.get("welcomeMessage") or d.get("welcomeMessage")),
            welcome_subtext=self._str_or_none(existing.get("welcomeSubtext") or d.get("welcomeSubtext")),
            captures=captures,
            customer_email=self._str_or_none(existing.get("customerEmail") or d.get("customerEmail")),
            order_confirmation=dict(order_confirmation) if isinstance(order_confirmation, dict) else None,
            message=self._str_or_none(existing.get("message") or d.get("message")),
            suggested_actions=[str(s) for s in suggested if _has_value(s)],
        )

    def _str_or_none(self, value) -> Optional[str]:
        if not _has_value(value):
            return None
        return self._coerce_field_to_str(value)
