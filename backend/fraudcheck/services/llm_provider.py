"""Multimodal analysis provider abstraction supporting multiple providers."""

import asyncio
import base64
import io
import logging
from typing import Optional, Dict, List

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from fraudcheck.config import settings
from fraudcheck.errors import RateLimitedError
from fraudcheck.models import LLMProvider

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_OLLAMA_URL = "http://localhost:11434"


class AnalysisProviderService:
    """Sends a document plus instructions to a vision-capable model."""

    # Default model per provider (all accept images)
    DEFAULT_MODELS = {
        "openai": "gpt-4o",
        "azure": "gpt-4o",
        "anthropic": "claude-3-5-sonnet-20241022",
        "gemini": "gemini-2.5-flash",
        "ollama": "qwen2.5vl:7b",
    }

    DISPLAY_NAMES = {
        "openai": "OpenAI",
        "azure": "Azure OpenAI",
        "anthropic": "Anthropic Claude",
        "gemini": "Google Gemini",
        "ollama": "Ollama (local)",
    }

    # Image types every provider accepts inline
    IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

    def __init__(self, provider: Optional[LLMProvider] = None, timeout: float = 120.0, max_pdf_pages: int = 3):
        self.provider = provider
        self.timeout = timeout
        self.max_pdf_pages = max_pdf_pages

    @property
    def model(self) -> str:
        if not self.provider:
            return ""
        return self.provider.model or self.DEFAULT_MODELS.get(self.provider.name, "")

    @property
    def source_tag(self) -> str:
        """Value stored as ``verification_source`` on finished runs."""
        return f"ai_{self.provider.name}" if self.provider else "ai_unconfigured"

    async def get_active_provider_info(self) -> Dict:
        if not self.provider:
            return {"configured": False, "provider": None}
        return {
            "configured": True,
            "provider": self.provider.name,
            "display_name": self.provider.display_name,
            "model": self.model,
            "timeout": self.timeout,
            "max_pdf_pages": self.max_pdf_pages,
        }

    async def test_connection(self) -> Dict:
        """Test connection to the active provider with a text-only prompt."""
        response = await self.analyze("Reply with the JSON object {\"ok\": true}.", "Connection test", None, None)
        return {"provider": self.provider.name, "model": self.model, "response": response}

    async def analyze(
        self,
        system_prompt: str,
        user_text: str,
        content: Optional[bytes],
        mime_type: Optional[str],
    ) -> str:
        """Send instructions and (optionally) one document; return the raw reply text."""
        if not self.provider:
            raise ValueError("No analysis provider configured")

        name = self.provider.name
        if name == "openai":
            return await self._analyze_openai(system_prompt, user_text, content, mime_type)
        elif name == "azure":
            return await self._analyze_openai(system_prompt, user_text, content, mime_type, azure=True)
        elif name == "anthropic":
            return await self._analyze_anthropic(system_prompt, user_text, content, mime_type)
        elif name == "gemini":
            return await self._analyze_gemini(system_prompt, user_text, content, mime_type)
        elif name == "ollama":
            return await self._analyze_ollama(system_prompt, user_text, content, mime_type)
        else:
            raise ValueError(f"Unknown provider: {name}")

    @staticmethod
    def _b64(content: bytes) -> str:
        return base64.b64encode(content).decode("utf-8")

    async def _analyze_openai(self, system_prompt, user_text, content, mime_type, azure: bool = False) -> str:
        """Complete using the OpenAI (or Azure OpenAI) chat API."""
        from openai import AsyncOpenAI, AsyncAzureOpenAI, RateLimitError

        if azure:
            client = AsyncAzureOpenAI(
                api_key=self.provider.api_key,
                api_version="2024-10-21",
                azure_endpoint=self.provider.api_base_url,
                timeout=self.timeout,
            )
        else:
            client = AsyncOpenAI(
                api_key=self.provider.api_key,
                base_url=self.provider.api_base_url or None,
                timeout=self.timeout,
            )

        parts: List[Dict] = [{"type": "text", "text": user_text}]
        if content is not None:
            data_uri = f"data:{mime_type};base64,{self._b64(content)}"
            if mime_type == "application/pdf":
                parts.append({"type": "file", "file": {"filename": "document.pdf", "file_data": data_uri}})
            else:
                parts.append({"type": "image_url", "image_url": {"url": data_uri}})

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": parts},
                ],
                temperature=0.1,
                response_format={"type": "json_object"},
            )
        except RateLimitError as e:
            raise RateLimitedError(str(e)) from e

        return response.choices[0].message.content or ""

    async def _analyze_anthropic(self, system_prompt, user_text, content, mime_type) -> str:
        """Complete using the Anthropic messages API."""
        from anthropic import AsyncAnthropic, RateLimitError

        client = AsyncAnthropic(api_key=self.provider.api_key, timeout=self.timeout)

        blocks: List[Dict] = []
        if content is not None:
            block_type = "document" if mime_type == "application/pdf" else "image"
            blocks.append({
                "type": block_type,
                "source": {"type": "base64", "media_type": mime_type, "data": self._b64(content)},
            })
        blocks.append({"type": "text", "text": user_text})

        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=2048,
                system=system_prompt,
                messages=[{"role": "user", "content": blocks}],
            )
        except RateLimitError as e:
            raise RateLimitedError(str(e)) from e

        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    async def _analyze_gemini(self, system_prompt, user_text, content, mime_type) -> str:
        """Complete using Gemini generateContent (PDFs and images inline)."""
        base_url = (self.provider.api_base_url or GEMINI_BASE_URL).rstrip("/")

        parts: List[Dict] = [{"text": user_text}]
        if content is not None:
            parts.append({"inlineData": {"mimeType": mime_type, "data": self._b64(content)}})

        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{base_url}/models/{self.model}:generateContent",
                params={"key": self.provider.api_key},
                json=body,
            )
            if response.status_code == 429:
                raise RateLimitedError("Gemini rate limit exceeded")
            response.raise_for_status()
            result = response.json()

        candidates = result.get("candidates") or []
        if not candidates:
            raise ValueError("No candidates returned from Gemini API")
        parts = candidates[0].get("content", {}).get("parts", [])
        return "".join(p.get("text", "") for p in parts)

    async def _analyze_ollama(self, system_prompt, user_text, content, mime_type) -> str:
        """Complete using a local Ollama vision model."""
        base_url = (self.provider.api_base_url or DEFAULT_OLLAMA_URL).rstrip("/")

        images = []
        if content is not None:
            images = [self._b64(page) for page in await self._rasterize(content, mime_type)]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{base_url}/api/generate",
                json={
                    "model": self.model,
                    "system": system_prompt,
                    "prompt": user_text,
                    "images": images,
                    "format": "json",
                    "stream": False,
                    "options": {"temperature": 0.1},
                },
            )
            if response.status_code == 429:
                raise RateLimitedError("Ollama is overloaded")
            response.raise_for_status()
            return response.json().get("response", "")

    async def _rasterize(self, content: bytes, mime_type: Optional[str]) -> List[bytes]:
        """Turn a PDF or image into PNG page images the vision model accepts."""
        from PIL import Image

        if mime_type == "application/pdf":
            from pdf2image import convert_from_bytes

            # Run in thread pool to not block the loop
            loop = asyncio.get_running_loop()
            pages = await loop.run_in_executor(
                None,
                lambda: convert_from_bytes(content, first_page=1, last_page=self.max_pdf_pages),
            )
        else:
            pages = [Image.open(io.BytesIO(content))]

        return [prepare_image(page) for page in pages]


def prepare_image(img, max_size: int = 1344) -> bytes:
    """Convert a PIL image to PNG bytes, downscaled and aligned for vision models.

    qwen2.5vl works on 28px patches, so both sides are rounded to a multiple of 28.
    """
    from PIL import Image

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    w, h = img.size
    if max(w, h) > max_size:
        ratio = max_size / max(w, h)
        w = int(w * ratio)
        h = int(h * ratio)

    w = max(28, (w // 28) * 28)
    h = max(28, (h // 28) * 28)
    img = img.resize((w, h), Image.LANCZOS)

    output = io.BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()


def provider_from_settings() -> Optional[LLMProvider]:
    """Transient provider built from environment settings, if any is configured."""
    name = settings.analysis_provider
    if not name or (not settings.analysis_api_key and name != "ollama"):
        return None
    return LLMProvider(
        name=name,
        display_name=AnalysisProviderService.DISPLAY_NAMES.get(name, name),
        api_key=settings.analysis_api_key,
        api_base_url=settings.analysis_base_url or "",
        model=settings.analysis_model,
        is_active=True,
        is_configured=True,
    )


async def load_active_provider(db: AsyncSession) -> Optional[LLMProvider]:
    """Active provider from the database, falling back to environment settings."""
    result = await db.execute(
        select(LLMProvider).where(LLMProvider.is_active == True)  # noqa: E712
    )
    provider = result.scalars().first()
    return provider or provider_from_settings()


def build_analysis_service(provider: Optional[LLMProvider]) -> AnalysisProviderService:
    """Service for ``provider``; its own timeout and page limit win over the settings."""
    return AnalysisProviderService(
        provider,
        timeout=(provider and provider.request_timeout) or settings.analysis_timeout,
        max_pdf_pages=(provider and provider.max_pdf_pages) or settings.max_pdf_pages,
    )
