import json
from typing import Any, Callable, List, Optional, Union

from .fallback import FallbackOrchestrator
from .schemas import (
    ChainAgent,
    ChainRunResult,
    ChainStepResult,
    ChatTurn,
    ExtractResult,
    FallbackResult,
    QueryOptions,
)

DEFAULT_VISION_PROMPT = (
    "Describe this image in detail. Transcribe any visible text, list the notable objects, "
    "and call out anything that looks like an error message or warning."
)
EXTRACTION_PROMPT = """Extract the key items from the text below.
{instructions}
Respond with a JSON array only. Each element is an object with "type", "title" and "content" fields.
Return [] if nothing qualifies.

TEXT:
{text}"""
CHAIN_MAX_TOKENS = 4096


class ChatSession:
    """Interactive chat: history is flattened into a transcript on every turn."""

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        *,
        system: Optional[str] = None,
        history: Optional[List[ChatTurn]] = None,
        options: Optional[QueryOptions] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.system = system
        self.history: List[ChatTurn] = list(history or [])
        self.options = options

    def build_prompt(self, message: str) -> str:
        if not self.history:
            return message
        lines = []
        for turn in self.history:
            speaker = "User" if turn.role == "user" else "Assistant"
            lines.append(f"{speaker}: {turn.content}")
        lines.append(f"User: {message}")
        lines.append("Assistant:")
        return "\n\n".join(lines)

    async def reply(
        self,
        message: str,
        on_chunk: Callable[[str], Any],
        on_reset: Optional[Callable[[], Any]] = None,
    ) -> FallbackResult:
        result = await self.orchestrator.stream(
            self.build_prompt(message),
            self.options,
            on_chunk,
            on_reset=on_reset,
            system=self.system,
        )
        if not result.cancelled:
            self.history.append(ChatTurn(role="user", content=message))
            self.history.append(ChatTurn(role="assistant", content=result.content))
        return result


async def analyze_image(
    orchestrator: FallbackOrchestrator,
    image: Union[bytes, str],
    prompt: Optional[str] = None,
    options: Optional[QueryOptions] = None,
    media_type: Optional[str] = None,
) -> FallbackResult:
    return await orchestrator.complete_with_image(
        prompt or DEFAULT_VISION_PROMPT, image, options, media_type=media_type
    )


class ChainRunner:
    """Runs agents in sequence, each one's output becoming the next one's input."""

    def __init__(self, orchestrator: FallbackOrchestrator, *, max_tokens: int = CHAIN_MAX_TOKENS) -> None:
        self.orchestrator = orchestrator
        self.max_tokens = max_tokens
        self._stop_requested = False

    def stop(self) -> None:
        self._stop_requested = True

    async def run(self, prompt: str, agents: List[ChainAgent]) -> ChainRunResult:
        self._stop_requested = False
        result = ChainRunResult()
        current = prompt
        for agent in agents:
            if self._stop_requested:
                result.stopped = True
                break
            options = QueryOptions(max_tokens=self.max_tokens, model=agent.model)
            step = await self.orchestrator.complete(current, options, system=agent.task_spec or None)
            if step.cancelled:
                result.stopped = True
                break
            result.steps.append(
                ChainStepResult(
                    agent=agent.name,
                    input=current,
                    output=step.content or "No response",
                    used_cli=step.used_cli,
                    cli_error=step.cli_error,
                )
            )
            current = step.content or "No response"
        result.output = result.steps[-1].output if result.steps else ""
        return result


def parse_json_list(text: str) -> Optional[List[Any]]:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, list) else None


async def extract_text(
    orchestrator: FallbackOrchestrator,
    text: str,
    instructions: Optional[str] = None,
    options: Optional[QueryOptions] = None,
) -> ExtractResult:
    prompt = EXTRACTION_PROMPT.format(instructions=(instructions or "").strip(), text=text)
    result = await orchestrator.complete(prompt, options)
    return ExtractResult(
        content=result.content,
        items=parse_json_list(result.content),
        used_cli=result.used_cli,
        cli_error=result.cli_error,
    )
