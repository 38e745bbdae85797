# concierge/llm_client.py

import asyncio
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from openai import OpenAI
from langchain_google_vertexai import ChatVertexAI
from langchain_core.messages import AIMessage, BaseMessage, SystemMessage

logger = logging.getLogger("concierge")

T = TypeVar("T")


class MaxRetryErrorsException(Exception):
    pass


# Backoff shared by every client in the process: one 429 slows everybody down
_backoff_lock = threading.Lock()
_wait_until = 0.0
_backoff_seconds = 30.0
_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_rate_limited(e: Exception) -> bool:
    msg = str(e)
    return "429" in msg and (
        "RESOURCE_EXHAUSTED" in msg
        or "Resource has been exhausted" in msg
        or "Too Many Requests" in msg
        or "rate limit" in msg.lower()
    )


def _wait_for_backoff() -> None:
    while True:
        with _backoff_lock:
            wait = _wait_until - time.monotonic()
        if wait <= 0:
            return
        time.sleep(min(wait, 1.0))


def _register_backoff() -> float:
    global _wait_until, _backoff_seconds
    with _backoff_lock:
        delay = random.uniform(_backoff_seconds * 0.95, _backoff_seconds * 1.35)
        _backoff_seconds = min(_backoff_seconds * 2, _BACKOFF_MAX)
        _wait_until = max(_wait_until, time.monotonic() + delay)
        return delay


def _relax_backoff() -> None:
    global _backoff_seconds
    with _backoff_lock:
        _backoff_seconds = max(1.0, _backoff_seconds * 0.5)


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a blocking LLM call with the shared 429/timeout backoff and retries.
    Raises MaxRetryErrorsException (chained to the last error) when all attempts fail.
    """
    last_exception: Exception | None = None

    for attempt in range(retries):
        _wait_for_backoff()
        started = time.time()
        try:
            result = fn()
            _relax_backoff()
            return result
        except Exception as e:
            last_exception = e
            elapsed = time.time() - started
            if _is_rate_limited(e) or _is_timeout_error(e):
                msg = f"Attempt {attempt + 1} got 429/timeout, backing off ~{_register_backoff():.1f}s."
            else:
                msg = f"Attempt {attempt + 1} failed."
            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


def is_openai_model(model_name: str) -> bool:
    return any(model_name.startswith(p) for p in ("gpt-", "gpt4", "o1", "o3", "o4"))


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """
    'gpt-5.1_fast' -> ('gpt-5.1', {...responses params...}).

    Suffix tokens are presets (standard, fast, deep) or explicit verbosity /
    reasoning effort / service tier values.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed.")

    base, *suffixes = raw.split("_")
    if not suffixes:
        return base, {}

    presets: Dict[str, Tuple[Optional[str], Optional[str]]] = {
        "standard": ("low", "low"),
        "fast": ("low", "none"),
        "deep": ("medium", "high"),
    }
    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high"}
    tier_tokens = {"auto", "default", "flex", "priority"}

    verbosity: Optional[str] = None
    reasoning: Optional[str] = None
    tier: Optional[str] = None
    unknown = []
    for tok in (s.strip().lower() for s in suffixes):
        if not tok:
            continue
        if tok in presets:
            p_verb, p_reason = presets[tok]
            verbosity = verbosity or p_verb
            reasoning = reasoning or p_reason
        elif verbosity is None and tok in verbosity_tokens:
            verbosity = tok
        elif reasoning is None and tok in reasoning_tokens:
            reasoning = tok
        elif tier is None and tok in tier_tokens:
            tier = tok
        else:
            unknown.append(tok)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'.")

    params: Dict[str, Any] = {"service_tier": tier or "default"}
    if verbosity is not None:
        params["text"] = {"verbosity": verbosity}
    if reasoning is not None:
        params["reasoning"] = {"effort": reasoning}
    return base, params


class ChatLlmClient:
    """
    Chat-style wrapper used by the LLM-backed agent source:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...)])

    Under the hood:
    - Vertex: ChatVertexAI.invoke(messages)
    - OpenAI: Responses API with input=[{role, content}, ...]
    Token usage of every call is logged and accumulated in `last_usage`.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self.last_usage: Optional[Dict[str, int]] = None
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            self._vertex = ChatVertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _add_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
        else:
            for k, v in inc.items():
                self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)
        logger.info(
            f"[CHAT-LLM-USAGE] {self.model_name}: prompt={inc.get('prompt_token_count', 0)} "
            f"completion={inc.get('candidates_token_count', 0)} "
            f"running_total={self.last_usage.get('total_token_count', 0)}"
        )

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        self._add_usage({
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        })

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            usage_md = rm.get("usage_metadata") if isinstance(rm, dict) else None
        if not usage_md:
            return

        def get(*keys: str) -> int:
            for k in keys:
                v = usage_md.get(k) if isinstance(usage_md, dict) else getattr(usage_md, k, None)
                if v:
                    return int(v)
            return 0

        self._add_usage({
            "prompt_token_count": get("prompt_token_count", "input_tokens"),
            "candidates_token_count": get("candidates_token_count", "output_tokens"),
            "total_token_count": get("total_token_count", "total_tokens"),
        })

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def _invoke_once(self, messages: List[BaseMessage]) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(messages)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return str(getattr(resp, "content", resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        return (getattr(resp, "output_text", "") or "").strip()

    def invoke(self, messages: List[BaseMessage], *, retries: int = 3) -> str:
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=retries,
            log=lambda msg: logger.warning(f"[CHAT-LLM-RETRY] {msg}"),
        )

