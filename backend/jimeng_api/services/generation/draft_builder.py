"""
Draft payload builder for /mweb/v1/aigc_draft/generate.

A draft is a tree of component nodes; every node carries its own id. The
functions here only assemble dictionaries and never touch the network.
"""

import json
import math
import random
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from jimeng_api.models.generation import ReferenceAsset

DEFAULT_IMAGE_MODEL = "jimeng-4.0"
DEFAULT_VIDEO_MODEL = "jimeng-video-3.0"

IMAGE_DRAFT_VERSION = "3.0.2"
BLEND_DRAFT_VERSION = "3.2.9"
VIDEO_DRAFT_VERSION = "3.2.8"

IMAGE_MODEL_MAP = {
    "jimeng-4.0": "high_aes_general_v40",
    "jimeng-3.1": "high_aes_general_v30l_art_fangzhou:general_v3.0_18b",
    "jimeng-3.0": "high_aes_general_v30l:general_v3.0_18b",
    "jimeng-2.1": "high_aes_general_v21_L:general_v2.1_L",
    "jimeng-2.0-pro": "high_aes_general_v20_L:general_v2.0_L",
    "jimeng-2.0": "high_aes_general_v20:general_v2.0",
    "jimeng-1.4": "high_aes_general_v14:general_v1.4",
    "jimeng-xl-pro": "text2img_xl_sft",
}

VIDEO_MODEL_MAP = {
    "jimeng-video-3.0-pro": "dreamina_ic_generate_video_model_vgfm_3.0_pro",
    "jimeng-video-3.0": "dreamina_ic_generate_video_model_vgfm_3.0",
    "jimeng-video-2.0": "dreamina_ic_generate_video_model_vgfm_lite",
    "jimeng-video-2.0-pro": "dreamina_ic_generate_video_model_vgfm1.0",
}

SEED_BASE = 2500000000
SEED_RANGE = 100000000

VIDEO_COMMERCE_INFO = {
    "benefit_type": "basic_video_operation_vgfm_v_three",
    "resource_id": "generate_video",
    "resource_id_type": "str",
    "resource_sub_type": "aigc",
}


def new_id() -> str:
    return str(uuid.uuid4())


def random_seed() -> int:
    return random.randrange(SEED_BASE, SEED_BASE + SEED_RANGE)


def resolve_image_model(name: Optional[str]) -> str:
    return IMAGE_MODEL_MAP.get(name or "", IMAGE_MODEL_MAP[DEFAULT_IMAGE_MODEL])


def resolve_video_model(name: Optional[str]) -> str:
    return VIDEO_MODEL_MAP.get(name or "", VIDEO_MODEL_MAP[DEFAULT_VIDEO_MODEL])


def is_video_model(name: Optional[str]) -> bool:
    return bool(name) and name.startswith("jimeng-video")


def aspect_ratio(width: int, height: int) -> str:
    """Reduce a size to its simplest ratio, e.g. 1920x1080 -> 16:9"""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid size {width}x{height}")
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def _node(id_factory: Callable[[], str], **fields) -> Dict[str, Any]:
    return {"type": "", "id": id_factory(), **fields}


def _image_ref(uri: str, width: int, height: int, id_factory: Callable[[], str]) -> Dict[str, Any]:
    return {
        "type": "image",
        "id": id_factory(),
        "source_from": "upload",
        "platform_type": 1,
        "name": "",
        "image_uri": uri,
        "width": width,
        "height": height,
        "format": "",
        "uri": uri,
    }


def _image_params(model_key: str) -> Dict[str, Any]:
    return {
        "babi_param": json.dumps({
            "scenario": "image_video_generation",
            "feature_key": "aigc_to_image",
            "feature_entrance": "to_image",
            "feature_entrance_detail": f"to_image-{model_key}",
        }),
    }


def _envelope(
    extend: Dict[str, Any],
    submit_id: str,
    metrics_extra: Dict[str, Any],
    draft: Dict[str, Any],
    assistant_id: str
) -> Dict[str, Any]:
    return {
        "extend": extend,
        "submit_id": submit_id,
        "metrics_extra": json.dumps(metrics_extra),
        "draft_content": json.dumps(draft),
        "http_common_info": {"aid": int(assistant_id)},
    }


def build_image_draft(
    model: str,
    prompt: str,
    width: int = 1024,
    height: int = 1024,
    sample_strength: float = 0.5,
    negative_prompt: str = "",
    seed: Optional[int] = None,
    assistant_id: str = "513695",
    id_factory: Callable[[], str] = new_id
) -> Dict[str, Any]:
    """Text-to-image draft"""
    model_key = resolve_image_model(model)
    component_id = id_factory()

    draft = {
        "type": "draft",
        "id": id_factory(),
        "min_version": IMAGE_DRAFT_VERSION,
        "is_from_tsn": True,
        "version": IMAGE_DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [{
            "type": "image_base_component",
            "id": component_id,
            "min_version": IMAGE_DRAFT_VERSION,
            "generate_type": "generate",
            "aigc_mode": "workbench",
            "abilities": _node(id_factory, generate=_node(
                id_factory,
                core_param=_node(
                    id_factory,
                    model=model_key,
                    prompt=prompt,
                    negative_prompt=negative_prompt,
                    seed=seed if seed is not None else random_seed(),
                    sample_strength=sample_strength,
                    image_ratio=1,
                    large_image_info=_node(id_factory, height=height, width=width),
                ),
                history_option=_node(id_factory),
            )),
        }],
    }

    data = _envelope(
        extend={"root_model": model_key, "template_id": ""},
        submit_id=id_factory(),
        metrics_extra={
            "templateId": "",
            "generateCount": 1,
            "promptSource": "custom",
            "templateSource": "",
            "lastRequestId": "",
            "originRequestId": "",
        },
        draft=draft,
        assistant_id=assistant_id,
    )
    return {"params": _image_params(model_key), "data": data}


def build_blend_draft(
    model: str,
    prompt: str,
    references: List[ReferenceAsset],
    sample_strength: float = 0.5,
    assistant_id: str = "513695",
    id_factory: Callable[[], str] = new_id
) -> Dict[str, Any]:
    """Image-to-image draft blending every uploaded reference"""
    model_key = resolve_image_model(model)
    component_id = id_factory()
    submit_id = id_factory()
    uris = [ref.uri for ref in references if ref.is_uploaded]

    ability_list = [
        _node(
            id_factory,
            name="byte_edit",
            image_uri_list=[uri],
            image_list=[_image_ref(uri, 0, 0, id_factory)],
            strength=0.5,
        )
        for uri in uris
    ]

    draft = {
        "type": "draft",
        "id": id_factory(),
        "min_version": BLEND_DRAFT_VERSION,
        "min_features": [],
        "is_from_tsn": True,
        "version": BLEND_DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [{
            "type": "image_base_component",
            "id": component_id,
            "min_version": IMAGE_DRAFT_VERSION,
            "aigc_mode": "workbench",
            "metadata": _node(
                id_factory,
                created_platform=3,
                created_platform_version="",
                created_time_in_ms=str(int(time.time() * 1000)),
                created_did="",
            ),
            "generate_type": "blend",
            "abilities": _node(id_factory, blend=_node(
                id_factory,
                min_version=BLEND_DRAFT_VERSION,
                min_features=[],
                core_param=_node(
                    id_factory,
                    model=model_key,
                    prompt=f"####{prompt}",
                    sample_strength=sample_strength,
                    image_ratio=1,
                    large_image_info=_node(id_factory, height=2048, width=2048, resolution_type="2k"),
                    intelligent_ratio=False,
                ),
                ability_list=ability_list,
                prompt_placeholder_info_list=[
                    _node(id_factory, ability_index=index) for index in range(len(uris))
                ],
                postedit_param=_node(id_factory, generate_type=0),
            )),
        }],
    }

    data = _envelope(
        extend={"root_model": model_key},
        submit_id=submit_id,
        metrics_extra={
            "promptSource": "custom",
            "generateCount": 1,
            "enterFrom": "click",
            "generateId": submit_id,
            "isRegenerate": False,
        },
        draft=draft,
        assistant_id=assistant_id,
    )
    return {"params": _image_params(model_key), "data": data}


def build_video_draft(
    model: str,
    prompt: str,
    width: int = 1024,
    height: int = 1024,
    resolution: str = "720p",
    first_frame: Optional[ReferenceAsset] = None,
    end_frame: Optional[ReferenceAsset] = None,
    seed: Optional[int] = None,
    assistant_id: str = "513695",
    id_factory: Callable[[], str] = new_id
) -> Dict[str, Any]:
    """Video draft, optionally anchored on first/last frame images"""
    model_key = resolve_video_model(model)
    component_id = id_factory()

    def frame(ref: Optional[ReferenceAsset]) -> Optional[Dict[str, Any]]:
        if ref is None or not ref.is_uploaded:
            return None
        return _image_ref(ref.uri, ref.width or width, ref.height or height, id_factory)

    first_frame_image = frame(first_frame)
    end_frame_image = frame(end_frame)

    metrics_extra = json.dumps({
        "enterFrom": "click",
        "isDefaultSeed": 1,
        "promptSource": "custom",
        "isRegenerate": False,
        "originSubmitId": id_factory(),
    })

    draft = {
        "type": "draft",
        "id": id_factory(),
        "min_version": "3.0.5",
        "is_from_tsn": True,
        "version": VIDEO_DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [{
            "type": "video_base_component",
            "id": component_id,
            "min_version": "1.0.0",
            "metadata": _node(
                id_factory,
                created_platform=3,
                created_platform_version="",
                created_time_in_ms=int(time.time() * 1000),
                created_did="",
            ),
            "generate_type": "gen_video",
            "aigc_mode": "workbench",
            "abilities": _node(id_factory, gen_video=_node(
                id_factory,
                text_to_video_params=_node(
                    id_factory,
                    model_req_key=model_key,
                    priority=0,
                    seed=seed if seed is not None else random_seed(),
                    video_aspect_ratio=aspect_ratio(width, height),
                    video_gen_inputs=[_node(
                        id_factory,
                        duration_ms=5000,
                        first_frame_image=first_frame_image,
                        end_frame_image=end_frame_image,
                        fps=24,
                        min_version="3.0.5",
                        prompt=prompt,
                        resolution=resolution,
                        video_mode=2,
                    )],
                ),
                video_task_extra=metrics_extra,
            )),
        }],
    }

    # Only the 3.0 model accepts a last frame
    root_model = VIDEO_MODEL_MAP[DEFAULT_VIDEO_MODEL] if end_frame_image else model_key
    data = {
        "extend": {
            "root_model": root_model,
            "m_video_commerce_info": dict(VIDEO_COMMERCE_INFO),
            "m_video_commerce_info_list": [dict(VIDEO_COMMERCE_INFO)],
        },
        "submit_id": id_factory(),
        "metrics_extra": metrics_extra,
        "draft_content": json.dumps(draft),
        "http_common_info": {"aid": int(assistant_id)},
    }
    params = {
        "aigc_features": "app_lip_sync",
        "web_version": "6.6.0",
        "da_version": VIDEO_DRAFT_VERSION,
    }
    return {"params": params, "data": data}
