from fastapi import APIRouter

from jimeng_api.schemas.openai import ModelCard, ModelList
from jimeng_api.services.generation.draft_builder import IMAGE_MODEL_MAP, VIDEO_MODEL_MAP

router = APIRouter()


@router.get("", response_model=ModelList)
async def list_models():
    """Models accepted by the generation endpoints"""
    cards = [ModelCard(id=name, description="Image generation model") for name in IMAGE_MODEL_MAP]
    cards += [ModelCard(id=name, description="Video generation model") for name in VIDEO_MODEL_MAP]
    return ModelList(data=cards)
