import threading
import time
from dataclasses import dataclass
from typing import Dict, List

from langchain_community.chat_message_histories.in_memory import ChatMessageHistory
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from concierge import settings


def approx_tokens(text: str) -> int:
    # chars/4, good enough to keep prompts under the model window
    return max(1, len(text or "") // 4)


@dataclass
class _Transcript:
    history: ChatMessageHistory
    expires_at: float


class HistoryCache:
    """
    Chat transcript of each upstream agent session, so the LLM-backed agent
    can replay the conversation on every call.

    - keyed by upstream session id: restoring a cached session id finds its
      transcript again without any upstream call
    - sliding TTL, refreshed on every read and write
    - token budget enforced by dropping whole user/agent turns, oldest first
    - guarded by a lock, since LLM calls run in worker threads
    """

    def __init__(self, ttl_seconds: int, max_tokens: int):
        self.ttl_seconds = ttl_seconds
        self.max_tokens = max_tokens
        self._lock = threading.Lock()
        self._transcripts: Dict[str, _Transcript] = {}

    def _live_unlocked(self, session_id: str, create: bool) -> _Transcript | None:
        now = time.time()
        transcript = self._transcripts.get(session_id)
        if transcript is not None and transcript.expires_at <= now:
            del self._transcripts[session_id]
            transcript = None
        if transcript is None:
            if not create:
                return None
            transcript = _Transcript(ChatMessageHistory(), now)
            self._transcripts[session_id] = transcript
        transcript.expires_at = now + self.ttl_seconds
        return transcript

    def has(self, session_id: str) -> bool:
        with self._lock:
            transcript = self._transcripts.get(str(session_id))
            return transcript is not None and transcript.expires_at > time.time()

    def snapshot(self, session_id: str, reserve_tokens: int = 0) -> List[BaseMessage]:
        """
        Copy of the transcript for the next prompt, trimmed so that it fits
        next to `reserve_tokens` of system prompt.
        """
        with self._lock:
            transcript = self._live_unlocked(str(session_id), create=True)
            self._fit_unlocked(transcript.history, self.max_tokens - reserve_tokens)
            return list(transcript.history.messages)

    def append_turn(self, session_id: str, user_text: str, agent_reply: str) -> None:
        with self._lock:
            transcript = self._live_unlocked(str(session_id), create=True)
            transcript.history.add_message(HumanMessage(content=user_text))
            transcript.history.add_message(AIMessage(content=agent_reply))
            self._fit_unlocked(transcript.history, self.max_tokens)

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._transcripts.pop(str(session_id), None)

    def _fit_unlocked(self, history: ChatMessageHistory, budget: int) -> None:
        msgs = list(history.messages)
        # messages are appended in (user, agent) pairs
        turns = [msgs[i:i + 2] for i in range(0, len(msgs), 2)]
        cost = [sum(approx_tokens(str(m.content)) for m in turn) for turn in turns]

        total = sum(cost)
        dropped = 0
        while dropped < len(turns) and total > budget:
            total -= cost[dropped]
            dropped += 1

        if dropped:
            history.messages = [m for turn in turns[dropped:] for m in turn]

    def sweep_expired(self) -> int:
        """
        Delete expired transcripts. Returns how many entries were removed.
        """
        now = time.time()
        with self._lock:
            expired = [sid for sid, t in self._transcripts.items() if t.expires_at <= now]
            for sid in expired:
                del self._transcripts[sid]
        return len(expired)


GLOBAL_HISTORY_CACHE = HistoryCache(
    ttl_seconds=settings.HISTORY_TTL_SECONDS,
    max_tokens=settings.HISTORY_MAX_TOKENS,
)
