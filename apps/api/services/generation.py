"""OpenAI-backed content generation for the metered AI endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from config import require_openai_api_key, settings

logger = logging.getLogger(__name__)

WRITER_SYSTEM_PROMPT = (
    "You are a professional content writer with expertise in creating high-quality, engaging "
    "content for various purposes. Provide well-structured, detailed, and original content based "
    "on the user's requirements."
)
TRANSLATOR_SYSTEM_PROMPT = (
    "You are a professional translator. Translate the user's text faithfully, preserving tone, "
    "formatting and meaning. Reply with the translation only."
)
GRAMMAR_SYSTEM_PROMPT = (
    "You are a meticulous copy editor. Correct grammar, spelling and punctuation in the user's text "
    "without changing its meaning or voice. Reply with the corrected text only."
)
IMPROVE_SYSTEM_PROMPT = (
    "You are a senior editor. Rewrite the user's text to be clearer, more engaging and better "
    "structured while keeping its intent. Reply with the improved text only."
)

ALLOWED_IMAGE_SIZES = {"256x256", "512x512", "1024x1024", "1024x1792", "1792x1024"}


class GenerationUnavailableError(RuntimeError):
    """Raised when the AI provider is not configured."""


class GenerationError(RuntimeError):
    """Raised when the AI provider call fails or returns nothing usable."""


def get_openai_client() -> AsyncOpenAI:
    try:
        api_key = require_openai_api_key()
    except ValueError as exc:
        raise GenerationUnavailableError("AI service is not configured") from exc
    return AsyncOpenAI(api_key=api_key)


async def _chat(system_prompt: str, user_prompt: str, temperature: float = 0.7) -> str:
    client = get_openai_client()
    try:
        response = await client.chat.completions.create(
            model=settings.OPENAI_TEXT_MODEL,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=settings.OPENAI_MAX_TOKENS,
        )
    except OpenAIError as exc:
        logger.error("OpenAI API error: %s", exc)
        raise GenerationError("Failed to generate content. Please try again later.") from exc

    content = (response.choices[0].message.content or "").strip() if response.choices else ""
    if not content:
        raise GenerationError("AI service returned an empty response.")
    return content


async def generate_text(prompt: str) -> str:
    return await _chat(WRITER_SYSTEM_PROMPT, prompt)


async def translate_text(text: str, target_language: str, source_language: Optional[str] = None) -> str:
    source = f" from {source_language}" if source_language else ""
    return await _chat(
        TRANSLATOR_SYSTEM_PROMPT,
        f"Translate the following text{source} to {target_language}:\n\n{text}",
        temperature=0.3,
    )


async def check_grammar(text: str) -> str:
    return await _chat(GRAMMAR_SYSTEM_PROMPT, text, temperature=0.0)


async def improve_content(text: str, instructions: Optional[str] = None) -> str:
    prompt = text if not instructions else f"Instructions: {instructions}\n\nText:\n{text}"
    return await _chat(IMPROVE_SYSTEM_PROMPT, prompt)


def build_image_prompt(prompt: str, style: Optional[str] = None) -> str:
    if style and style.strip() and style.strip().lower() != "none":
        return f"{prompt}, {style.strip().lower()} style"
    return prompt


async def generate_image(prompt: str, style: Optional[str] = None, size: str = "1024x1024") -> Dict[str, Any]:
    if size not in ALLOWED_IMAGE_SIZES:
        raise ValueError(f"Unsupported image size: {size}")

    full_prompt = build_image_prompt(prompt, style)
    client = get_openai_client()
    try:
        response = await client.images.generate(
            model=settings.OPENAI_IMAGE_MODEL,
            prompt=full_prompt,
            n=1,
            size=size,
            response_format="url",
        )
    except OpenAIError as exc:
        logger.error("OpenAI image API error: %s", exc)
        raise GenerationError("Failed to generate image. Please try again later.") from exc

    if not response.data or not response.data[0].url:
        raise GenerationError("AI service returned no image.")
    return {"imageUrl": response.data[0].url, "prompt": full_prompt}
