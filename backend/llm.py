import json
import logging

import anthropic

import config

logger = logging.getLogger(__name__)

client = anthropic.AsyncAnthropic(api_key=config.ANTHROPIC_API_KEY)


class LLMError(Exception):
    """Claude could not be reached or did not answer with usable JSON."""


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code block (```json ... ```) if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]  # Remove first line (```json)
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]  # Remove last line (```)
        text = "\n".join(lines)
    return text


async def complete_json(system_prompt: str, messages: list[dict], max_tokens: int = 512) -> dict:
    """Send a conversation to Claude and parse its reply as a JSON object."""
    try:
        response = await client.messages.create(
            model=config.ANTHROPIC_MODEL,
            max_tokens=max_tokens,
            system=system_prompt,
            messages=messages
        )
    except anthropic.APIError as e:
        logger.warning("Claude API error: %s", e)
        raise LLMError(f"API error: {e}") from e

    if not response.content or not hasattr(response.content[0], "text"):
        raise LLMError("Empty AI response")
    ai_text = response.content[0].text
    logger.debug("Claude response: %s", ai_text)

    try:
        parsed = json.loads(strip_code_fence(ai_text))
    except json.JSONDecodeError as e:
        raise LLMError("Failed to parse AI response") from e
    if not isinstance(parsed, dict):
        raise LLMError("Failed to parse AI response")
    return parsed
