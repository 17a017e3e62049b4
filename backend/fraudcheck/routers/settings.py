from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from fraudcheck.database import get_db
from fraudcheck.models import LLMProvider
from fraudcheck.routers.fraud_check import error_response
from fraudcheck.schemas import AnalysisProviderSchema
from fraudcheck.services.llm_provider import (
    AnalysisProviderService,
    build_analysis_service,
    load_active_provider,
)

router = APIRouter()


def _provider_to_dict(p: LLMProvider) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "display_name": p.display_name,
        "api_key": "***" if p.api_key else "",
        "api_base_url": p.api_base_url,
        "model": p.model,
        "request_timeout": p.request_timeout,
        "max_pdf_pages": p.max_pdf_pages,
        "is_active": p.is_active,
        "is_configured": p.is_configured,
    }


@router.get("/analysis-providers")
async def get_analysis_providers(db: AsyncSession = Depends(get_db)):
    """Get all analysis provider configurations."""
    result = await db.execute(select(LLMProvider).order_by(LLMProvider.name))
    providers = result.scalars().all()

    # If no providers exist, create defaults
    if not providers:
        for name, model in AnalysisProviderService.DEFAULT_MODELS.items():
            db.add(LLMProvider(
                name=name,
                display_name=AnalysisProviderService.DISPLAY_NAMES[name],
                api_base_url="http://localhost:11434" if name == "ollama" else "",
                model=model,
            ))
        await db.commit()

        result = await db.execute(select(LLMProvider).order_by(LLMProvider.name))
        providers = result.scalars().all()

    return [_provider_to_dict(p) for p in providers]


@router.put("/analysis-providers/{name}")
async def update_analysis_provider(
    name: str,
    data: AnalysisProviderSchema,
    db: AsyncSession = Depends(get_db)
):
    """Create or update a provider configuration."""
    if name not in AnalysisProviderService.DEFAULT_MODELS:
        return error_response(400, f"Unknown provider: {name}")

    result = await db.execute(select(LLMProvider).where(LLMProvider.name == name))
    provider = result.scalar_one_or_none()
    if not provider:
        provider = LLMProvider(name=name, display_name=AnalysisProviderService.DISPLAY_NAMES[name])
        db.add(provider)

    # Only one provider can be active
    if data.is_active:
        await db.execute(update(LLMProvider).values(is_active=False))

    if data.display_name:
        provider.display_name = data.display_name
    # Keep old key if *** or empty string is sent
    if data.api_key and data.api_key != "***":
        provider.api_key = data.api_key
    provider.api_base_url = data.api_base_url or ""
    provider.model = data.model or ""
    provider.request_timeout = data.request_timeout
    provider.max_pdf_pages = data.max_pdf_pages
    provider.is_active = data.is_active
    provider.is_configured = bool(provider.api_key or name == "ollama")

    await db.commit()
    return _provider_to_dict(provider)


@router.post("/analysis-providers/test")
async def test_analysis_provider(db: AsyncSession = Depends(get_db)):
    """Test the active analysis provider connection."""
    service = build_analysis_service(await load_active_provider(db))
    try:
        result = await service.test_connection()
        return {"success": True, "provider": result["provider"], "model": result["model"]}
    except Exception as e:
        return {"success": False, "error": str(e)}


@router.get("/analysis-providers/active")
async def get_active_provider(db: AsyncSession = Depends(get_db)):
    """Get information about the active analysis provider."""
    service = build_analysis_service(await load_active_provider(db))
    return await service.get_active_provider_info()
