"""Context management utilities: character budgets for the model transcript."""

import re
from typing import Dict, List, Optional

TRUNCATED_SUFFIX = "\n...[truncated]"
STEP_LIMIT_MESSAGE = "Agent stopped: too many tool steps."
STOPPED_MESSAGE = "Stopped."

_CONTINUATION_RE = re.compile(r"^(please\s+)?(continue|resume|keep going|go on|carry on|next)\.?$")


def count_chars(messages: List[dict]) -> int:
    return sum(len(str(m.get("content") or "")) for m in messages)


def limit_tool_output(text: Optional[str], max_chars: int = 12000) -> str:
    """Cap a tool result, marking the cut with ``...[truncated]``."""
    limit = max(200, int(max_chars or 12000))
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit] + TRUNCATED_SUFFIX


def trim_messages_for_model(messages: List[Dict[str, str]], max_chars: int) -> List[Dict[str, str]]:
    """Keep the newest messages that fit in ``max_chars``.

    Walks from the newest message backwards, skipping any older message
    that would overflow the budget. The newest message is always kept;
    if it alone is over budget only its tail is sent. A budget of 0
    keeps just the newest message.
    """
    if not messages:
        return []
    limit = max(0, int(max_chars or 0))
    if limit == 0:
        return [messages[-1]]

    out: List[Dict[str, str]] = []
    total = 0
    last = len(messages) - 1
    for i in range(last, -1, -1):
        msg = messages[i]
        content = str(msg.get("content") or "")
        if i == last and len(content) > limit:
            out.append(dict(msg, content=content[-limit:]))
            break
        if total + len(content) > limit:
            continue
        out.append(msg)
        total += len(content)
        if total >= limit:
            break
    out.reverse()
    return out


def build_agent_model_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Model-facing transcript seeded from the UI transcript.

    Tool call announcements are UI-only; tool results go back to the
    model as user messages; loop bookkeeping lines are dropped.
    """
    out = []
    for msg in messages or []:
        content = msg.get("content")
        if not isinstance(content, str):
            continue
        role = msg.get("role")
        if role == "assistant":
            if content.startswith("Tool call:"):
                continue
            if content.startswith("Tool result"):
                out.append({"role": "user", "content": content})
                continue
            if content in (STEP_LIMIT_MESSAGE, STOPPED_MESSAGE):
                continue
        out.append({"role": role, "content": content})
    return out


def is_continuation_request(text: str) -> bool:
    raw = (text or "").strip().lower()
    return bool(raw) and bool(_CONTINUATION_RE.match(raw))
