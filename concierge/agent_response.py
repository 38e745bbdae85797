# concierge/agent_response.py

import logging
from typing import List, Optional

from concierge.base_utils import BaseUtils
from concierge.capture_extractor import CaptureExtractor
from concierge.directive_parser import DirectiveParser
from concierge.entities import AgentResponse, Directive, DirectiveAction, RawAgentResponse

logger = logging.getLogger("concierge")

EMPTY_RESPONSE_FALLBACK = "I'm processing your request. Could you try asking again?"

DEFAULT_ACTION_MESSAGES = {
    DirectiveAction.CHANGE_SCENE: "Let me set the scene for you.",
    DirectiveAction.INITIATE_CHECKOUT: "Let me start the checkout process.",
    DirectiveAction.IDENTIFY_CUSTOMER: "Great, I've saved your profile! Now I can give you more personalized recommendations.",
    DirectiveAction.CAPTURE_ONLY: "How can I help you further?",
}
GENERIC_DIRECTIVE_MESSAGE = "Here's what I found for you."

# leftovers of a truncated JSON block that slipped past the last '}'
_JSON_TAIL_CHARS = ("]", "}", ",", ":", '"')


def looks_like_json(part: str) -> bool:
    t = (part or "").strip()
    if not t:
        return False
    if t[0] in "{[" and t[-1] in "}]":
        return True
    return t[0] in _JSON_TAIL_CHARS


class ResponseAssembler(BaseUtils):
    """
    Raw multi-chunk agent output -> AgentResponse.

    Decodes the directive (metadata first, then the concatenated text, then each
    chunk), splits off the prose the user should see, runs capture detection and
    guarantees a non-blank message.
    """

    def __init__(self, parser: Optional[DirectiveParser] = None, extractor: Optional[CaptureExtractor] = None):
        self.parser = parser or DirectiveParser()
        self.extractor = extractor or CaptureExtractor()

    def assemble(self, raw: RawAgentResponse, session_id: Optional[str] = None) -> AgentResponse:
        full_text = raw.full_text
        logger.debug(f"[agent] raw text: {full_text[:500]}")

        directive: Optional[Directive] = None
        text_parts: List[str] = []

        if raw.metadata.get("uiDirective"):
            directive = self.parser.parse_response(raw)
            if full_text.strip():
                text_parts.append(full_text.strip())
        else:
            directive = self.parser.parse(full_text)
            if directive is None:
                for chunk in raw.chunks:
                    d = self.parser.parse(chunk.text)
                    if d is not None:
                        directive = d
                    elif chunk.text and chunk.is_plain_text:
                        text_parts.append(chunk.text)
            else:
                text_parts.extend(self.prose_around_json(full_text))

        if directive is not None:
            logger.debug(f"[agent] parsed directive: {directive.action.value}")

        display_text = "\n".join(p for p in text_parts if not looks_like_json(p))

        extraction = self.extractor.extract(raw.chunks, directive, display_text)
        directive = extraction.directive
        message = extraction.display_text

        if not message and directive is not None:
            message = self.synthesize_message(directive)

        if directive is None and message:
            lower = message.lower()
            if "recommend" in lower or "here are" in lower or "product" in lower:
                logger.warning(
                    "[agent] Agent mentioned products but no directive was parsed. "
                    f"Full text: {full_text[:500]}"
                )

        if not message:
            logger.warning(f"[agent] Empty response, chunks={len(raw.chunks)}")
            message = EMPTY_RESPONSE_FALLBACK

        suggested = list(raw.suggested_actions)
        if not suggested and directive is not None:
            suggested = list(directive.payload.suggested_actions)

        return AgentResponse(
            session_id=session_id,
            message=message,
            directive=directive,
            suggested_actions=suggested,
            confidence=raw.confidence or 1.0,
        )

    def prose_around_json(self, full_text: str) -> List[str]:
        parts: List[str] = []
        start = full_text.find("{")
        end = full_text.rfind("}")
        if start > 0:
            before = full_text[:start].strip()
            if before:
                parts.append(before)
        if 0 <= end < len(full_text) - 1 and end > start:
            after = full_text[end + 1:].strip()
            if after:
                parts.append(after)
        return parts

    def synthesize_message(self, directive: Directive) -> str:
        payload = directive.payload
        if payload.message:
            return payload.message

        products = payload.products or []
        if products:
            if len(products) == 1:
                p = products[0]
                return f"I'd recommend the {p.get('name') or 'this product'}: {p.get('description') or 'a great choice for you.'}"
            names = ", ".join(str(p.get("name") or p["id"]) for p in products[:3])
            return f"Here are {len(products)} products I've curated for you, including {names}."

        if directive.action == DirectiveAction.WELCOME_SCENE:
            parts = [payload.welcome_message or "Welcome!"]
            if payload.welcome_subtext:
                parts.append(payload.welcome_subtext)
            return " ".join(parts)

        return DEFAULT_ACTION_MESSAGES.get(directive.action, GENERIC_DIRECTIVE_MESSAGE)
