"""Load the persona instructions that prefix every reply prompt."""

from __future__ import annotations

from pathlib import Path

DEFAULT_PERSONA = (
    "You are replying on behalf of the account owner in their private chats. "
    "Reply casually and naturally in first person, as the owner would. "
    "Never mention being an AI or an assistant. Keep it short and fitting the flow "
    "of the conversation. Read the previous messages and answer the latest one."
)


def get_persona(profile_name: str, repo_root: Path | None = None) -> str:
    """Return persona text from config/personas/<profile>.md, or the built-in default."""
    if repo_root is None:
        repo_root = Path(__file__).resolve().parent.parent
    persona_file = repo_root / "config" / "personas" / f"{profile_name}.md"
    if persona_file.exists():
        text = persona_file.read_text(encoding="utf-8").strip()
        if text:
            return text
    return DEFAULT_PERSONA
