from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger
import yaml

from .settings import settings

PROMPTS_DIR = Path(__file__).resolve().parent / "prompt_templates"
SYSTEM_PROMPT_FILE = PROMPTS_DIR / "trade_finder_system.txt"
WORKFLOW_PROMPTS_FILE = PROMPTS_DIR / "workflow_prompts.yaml"

FALLBACK_SYSTEM_PROMPT = (
    "You are a futures trade finder. Reply with a single JSON object. Use status "
    "\"TRADE_IDENTIFIED\" only for a high-confluence setup; otherwise reply with status \"NO_SETUP\"."
)


@dataclass
class WorkflowPrompt:
    key: str
    name: str
    instructions: str


def load_system_prompt(file_path: Path | None = None) -> str:
    path = Path(file_path or settings.system_prompt_path or SYSTEM_PROMPT_FILE)
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.error("Could not read system prompt {}: {}", path, exc)
        return FALLBACK_SYSTEM_PROMPT
    return text or FALLBACK_SYSTEM_PROMPT


def load_workflow_prompts(file_path: Path | None = None) -> dict[str, WorkflowPrompt]:
    path = Path(file_path or settings.workflow_prompts_path or WORKFLOW_PROMPTS_FILE)
    if not path.exists():
        logger.warning("Workflow prompt library {} not found", path)
        return {}

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    prompts: dict[str, WorkflowPrompt] = {}
    for key, entry in (raw.get("prompts") or {}).items():
        entry = entry or {}
        prompts[str(key)] = WorkflowPrompt(
            key=str(key),
            name=str(entry.get("name", key)),
            instructions=str(entry.get("instructions", "")).strip(),
        )
    return prompts
