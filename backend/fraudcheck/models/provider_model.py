"""Configured multimodal analysis providers."""

from sqlalchemy import Column, Integer, Float, String, Boolean, DateTime
from sqlalchemy.sql import func
from fraudcheck.database import Base


class LLMProvider(Base):
    """A vision-capable model endpoint used to analyze loan documents.

    At most one row is active. ``request_timeout`` and ``max_pdf_pages`` override
    the ``analysis_timeout`` / ``max_pdf_pages`` settings for this provider when set.
    """
    __tablename__ = "llm_providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)  # openai, azure, anthropic, gemini, ollama
    display_name = Column(String(200), nullable=False)
    api_key = Column(String(500), default="")
    api_base_url = Column(String(500), default="")  # Azure endpoint, Ollama host or Gemini proxy
    model = Column(String(200), default="")  # Empty: provider default vision model
    request_timeout = Column(Float, nullable=True)  # Seconds per document analysis
    max_pdf_pages = Column(Integer, nullable=True)  # Pages rasterized for image-only models
    is_active = Column(Boolean, default=False)
    is_configured = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
