import base64
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).parent.parent / "prompts"
_DEFAULT_MODEL = "claude-sonnet-4-6"

AttachmentLoader = Callable[[str], Awaitable[bytes]]


class InferenceError(Exception):
    """The model call failed or returned something unusable."""


def load_prompt(name: str) -> str:
    return (_PROMPTS_DIR / name).read_text(encoding="utf-8")


def _strip_fences(raw: str) -> str:
    if "```" in raw:
        raw = raw.split("```")[1]
        if raw.startswith("json"):
            raw = raw[4:]
    return raw.strip()


def _image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def _text_of(response) -> str:
    content = response.content
    if isinstance(content, list):
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block) for block in content
        )
    return content


class AnthropicInference:
    """Image classification and free-form replies through Claude."""

    def __init__(self, attachment_loader: AttachmentLoader, model: str = _DEFAULT_MODEL) -> None:
        self._load_attachment = attachment_loader
        self._model = model

    async def classify_attachments(self, refs: list[str], context_text: str) -> dict:
        """
        Read amounts and dates from receipts / screenshots.

        Returns:
        {
            "items": [{"action": "write"|"clear", "field": str, "team": str|null,
                       "amount": number|str|null, "date": str|null}],
            "summary": str
        }
        """
        system_prompt = load_prompt("classify_attachments.txt")
        content: list[dict] = [
            {"type": "text", "text": json.dumps({"operator_message": context_text}, ensure_ascii=False)}
        ]
        try:
            for ref in refs:
                data = await self._load_attachment(ref)
                encoded = base64.b64encode(data).decode("ascii")
                content.append(
                    {"type": "image_url", "image_url": {"url": f"data:{_image_mime(data)};base64,{encoded}"}}
                )

            llm = ChatAnthropic(model=self._model, max_tokens=1024)
            response = await llm.ainvoke([SystemMessage(content=system_prompt), HumanMessage(content=content)])
            result = json.loads(_strip_fences(_text_of(response)))
        except Exception as exc:
            logger.error("classify_attachments failed for %d ref(s): %s", len(refs), exc)
            raise InferenceError("classification failed") from exc

        if not isinstance(result, dict) or not isinstance(result.get("items", []), list):
            raise InferenceError("classification returned an unexpected shape")
        result.setdefault("items", [])
        return result

    async def converse(self, system_prompt: str, history: list[dict], user_content: str) -> str:
        messages = [SystemMessage(content=system_prompt)]
        for turn in history:
            if turn.get("role") == "assistant":
                messages.append(AIMessage(content=turn["content"]))
            else:
                messages.append(HumanMessage(content=turn["content"]))
        messages.append(HumanMessage(content=user_content))

        llm = ChatAnthropic(model=self._model, max_tokens=512)
        try:
            response = await llm.ainvoke(messages)
        except Exception as exc:
            logger.error("converse failed: %s", exc)
            raise InferenceError("conversation failed") from exc
        return _text_of(response).strip()
