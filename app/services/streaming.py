from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.models.events import EventType, SSEEvent
from app.models.state import plain_update


def node(name: str, update: dict[str, Any]) -> SSEEvent:
    return SSEEvent(
        event=EventType.NODE,
        data={
            "node": name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "update": update,
        },
    )


def draft(text: str, *, final: bool = True, kind: str = "report") -> SSEEvent:
    return SSEEvent(event=EventType.DRAFT, data={"text": text, "final": final, "kind": kind})


def evidence(sources: list[dict], *, notes: int = 0, node_name: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"sources": sources, "notes": notes}
    if node_name:
        data["node"] = node_name
    return SSEEvent(event=EventType.EVIDENCE, data=data)


def queries(items: list[str], *, round_number: int | None = None, node_name: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"queries": items}
    if round_number is not None:
        data["round"] = round_number
    if node_name:
        data["node"] = node_name
    return SSEEvent(event=EventType.QUERIES, data=data)


def issues(items: list[str], *, node_name: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"issues": items}
    if node_name:
        data["node"] = node_name
    return SSEEvent(event=EventType.ISSUES, data=data)


def llm_token(token: str, *, node_name: str) -> SSEEvent:
    return SSEEvent(event=EventType.LLM_TOKEN, data={"token": token, "node": node_name})


def custom(kind: str, content: str, *, round_number: int | None = None, **kwargs: Any) -> SSEEvent:
    data: dict[str, Any] = {"type": kind, "content": content}
    if round_number is not None:
        data["round"] = round_number
    data.update(kwargs)
    return SSEEvent(event=EventType.CUSTOM, data=data)


def error(message: str, *, error_name: str = "Workflow error", node_name: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"error": error_name, "message": message}
    if node_name:
        data["node"] = node_name
    return SSEEvent(event=EventType.ERROR, data=data)


def done(**kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.DONE, data=dict(kwargs))


def keepalive() -> SSEEvent:
    return SSEEvent(event=EventType.KEEPALIVE, data={"timestamp": datetime.now(timezone.utc).isoformat()})


def _node_summary(update: dict[str, Any]) -> dict[str, Any]:
    """Node payloads carry the delta minus bulky transcripts."""
    summary: dict[str, Any] = {}
    for key, value in update.items():
        if key in ("supervisor_messages", "raw_notes") and isinstance(value, list):
            summary[key] = {"count": len(value)}
        else:
            summary[key] = value
    return summary


def events_from_update(stage: str, update: dict[str, Any]) -> list[SSEEvent]:
    """Translate one stage's state delta into the client event feed."""
    plain = plain_update(update)
    events = [node(stage, _node_summary(plain))]

    if plain.get("queries"):
        events.append(queries(plain["queries"], node_name=stage))
    sources = plain.get("sources")
    notes = plain.get("notes")
    if sources or notes:
        events.append(
            evidence(sources or [], notes=len(notes) if isinstance(notes, list) else 0, node_name=stage)
        )
    if plain.get("issues"):
        events.append(issues(plain["issues"], node_name=stage))
    if plain.get("final_report"):
        events.append(draft(plain["final_report"], final=True, kind="report"))
    if plain.get("answer"):
        events.append(draft(plain["answer"], final=True, kind="answer"))
    return events
