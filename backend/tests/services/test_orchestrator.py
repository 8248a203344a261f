"""
Tests for the generation orchestrator: end-to-end flows against a scripted
upstream, the retry envelope around them and chat completion rendering.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from jimeng_api.core.exceptions import (
    ContentFiltered,
    InsufficientCredit,
    UploadFailed,
    UpstreamCallFailed,
    ValidationError,
)
from jimeng_api.schemas.openai import ChatCompletionRequest
from jimeng_api.services.account import CREDIT_RECEIVE_URI, USER_CREDIT_URI
from jimeng_api.services.generation.orchestrator import AssetUploader, parse_model
from jimeng_api.services.generation.poller import GENERATE_URI, HISTORY_BY_IDS_URI
from jimeng_api.services.generation.stream_emitter import DONE_EVENT
from tests.factories import (
    CONTENT_FILTER_CODE,
    credit_response,
    history_record,
    history_response,
    image_item,
    submit_response,
    video_item,
)

HISTORY_ID = "9876543210"
CAT_URL = "https://p9-dreamina.example.com/cat.webp"
VIDEO_URL = "https://v3-artist.vlabvod.com/xyz/dog.mp4"


def script_image_job(script, *records):
    script.on(USER_CREDIT_URI, credit_response())
    script.on(GENERATE_URI, submit_response(HISTORY_ID))
    script.on(HISTORY_BY_IDS_URI, *[history_response(HISTORY_ID, record) for record in records])


def draft_content(call):
    return json.loads(call["data"]["draft_content"])


class TestParseModel:

    @pytest.mark.unit
    def test_plain_name(self):
        assert parse_model("jimeng-4.0") == ("jimeng-4.0", 1024, 1024)

    @pytest.mark.unit
    def test_size_suffix(self):
        assert parse_model("jimeng-3.1:1920x1080") == ("jimeng-3.1", 1920, 1080)

    @pytest.mark.unit
    def test_odd_sizes_round_up_to_even(self):
        assert parse_model("jimeng-4.0:1023*767") == ("jimeng-4.0", 1024, 768)

    @pytest.mark.unit
    def test_unparseable_suffix_uses_default(self):
        assert parse_model("jimeng-4.0:large") == ("jimeng-4.0", 1024, 1024)

    @pytest.mark.unit
    @pytest.mark.parametrize("model", ["jimeng-video-3.0:0x0", "jimeng-4.0:1024x0", "jimeng-4.0:8192x1024"])
    def test_out_of_range_size_rejected(self, model):
        with pytest.raises(ValidationError):
            parse_model(model)


class TestGenerateImages:

    @pytest.mark.unit
    async def test_a_cat(self, orchestrator, upstream_script):
        script_image_job(
            upstream_script,
            history_record(20),
            history_record(20),
            history_record(10, [image_item(CAT_URL)]),
        )

        urls = await orchestrator.generate_images("jimeng-4.0", "a cat", "tok", width=1024, height=1024)

        assert urls == [CAT_URL]
        assert upstream_script.uris() == [
            USER_CREDIT_URI, GENERATE_URI, HISTORY_BY_IDS_URI, HISTORY_BY_IDS_URI, HISTORY_BY_IDS_URI,
        ]
        core = draft_content(upstream_script.calls[1])["component_list"][0]["abilities"]["generate"]["core_param"]
        assert core["prompt"] == "a cat"
        assert core["model"] == "high_aes_general_v40"

    @pytest.mark.unit
    async def test_content_filter_is_not_retried(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(30, fail_code=CONTENT_FILTER_CODE))

        with pytest.raises(ContentFiltered) as exc_info:
            await orchestrator.generate_images("jimeng-4.0", "forbidden", "tok")

        assert exc_info.value.history_id == HISTORY_ID
        assert upstream_script.uris().count(GENERATE_URI) == 1

    @pytest.mark.unit
    async def test_empty_balance_claims_daily_credit(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(10, [image_item(CAT_URL)]))
        upstream_script.responses[USER_CREDIT_URI] = [credit_response(total=0)]
        upstream_script.on(CREDIT_RECEIVE_URI, {"cur_total_credits": 66, "receive_quota": 66})

        await orchestrator.generate_images("jimeng-4.0", "a cat", "tok")

        assert upstream_script.uris()[:3] == [USER_CREDIT_URI, CREDIT_RECEIVE_URI, GENERATE_URI]
        assert upstream_script.calls[1]["data"] == {"time_zone": "Asia/Shanghai"}

    @pytest.mark.unit
    async def test_insufficient_credit_is_not_retried(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(20))
        upstream_script.responses[GENERATE_URI] = [InsufficientCredit()]

        with pytest.raises(InsufficientCredit):
            await orchestrator.generate_images("jimeng-4.0", "a cat", "tok")
        assert upstream_script.uris().count(GENERATE_URI) == 1

    @pytest.mark.unit
    async def test_failed_flow_is_retried_from_the_start(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(10, [image_item(CAT_URL)]))
        upstream_script.responses[GENERATE_URI] = [UpstreamCallFailed("HTTP 502"), submit_response(HISTORY_ID)]

        assert await orchestrator.generate_images("jimeng-4.0", "a cat", "tok") == [CAT_URL]
        assert upstream_script.uris().count(USER_CREDIT_URI) == 2
        assert upstream_script.uris().count(GENERATE_URI) == 2

    @pytest.mark.unit
    async def test_retry_budget_exhausted(self, orchestrator, upstream_script, test_settings):
        script_image_job(upstream_script, history_record(20))
        upstream_script.responses[GENERATE_URI] = [UpstreamCallFailed("HTTP 502")]

        with pytest.raises(UpstreamCallFailed):
            await orchestrator.generate_images("jimeng-4.0", "a cat", "tok")
        assert upstream_script.uris().count(GENERATE_URI) == test_settings.FLOW_RETRY_ATTEMPTS


class TestComposition:

    @pytest.mark.unit
    async def test_primary_upload_failure_never_submits(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(10, [image_item(CAT_URL)]))

        with patch.object(AssetUploader, "upload", AsyncMock(side_effect=UploadFailed("unreachable"))):
            with pytest.raises(UploadFailed):
                await orchestrator.generate_image_composition(
                    "jimeng-4.0", "blend", ["https://a/1.png", "https://a/2.png"], "tok"
                )

        assert GENERATE_URI not in upstream_script.uris()

    @pytest.mark.unit
    async def test_secondary_upload_failure_proceeds(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(10, [image_item(CAT_URL)]))

        with patch.object(AssetUploader, "upload", AsyncMock(side_effect=["tos/first", UploadFailed("bad")])):
            urls = await orchestrator.generate_image_composition(
                "jimeng-4.0", "blend", ["https://a/1.png", "https://a/2.png"], "tok"
            )

        assert urls == [CAT_URL]
        submit = next(call for call in upstream_script.calls if call["uri"] == GENERATE_URI)
        blend = draft_content(submit)["component_list"][0]["abilities"]["blend"]
        assert [a["image_uri_list"] for a in blend["ability_list"]] == [["tos/first"]]

    @pytest.mark.unit
    async def test_requires_images(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.generate_image_composition("jimeng-4.0", "blend", [], "tok")


class TestGenerateVideo:

    @pytest.mark.unit
    async def test_video_with_first_and_last_frame(self, orchestrator, upstream_script):
        upstream_script.on(USER_CREDIT_URI, credit_response())
        upstream_script.on(GENERATE_URI, submit_response(HISTORY_ID))
        upstream_script.on(
            HISTORY_BY_IDS_URI,
            history_response(HISTORY_ID, history_record(20)),
            history_response(HISTORY_ID, history_record(10, [video_item(VIDEO_URL)])),
        )

        with patch.object(AssetUploader, "upload", AsyncMock(side_effect=["tos/first", "tos/last"])):
            url = await orchestrator.generate_video(
                "jimeng-video-2.0", "a dog", "tok", width=1280, height=720,
                image_urls=["https://a/first.png", "https://a/last.png"]
            )

        assert url == VIDEO_URL
        submit = next(call for call in upstream_script.calls if call["uri"] == GENERATE_URI)
        inputs = draft_content(submit)["component_list"][0]["abilities"]["gen_video"][
            "text_to_video_params"]["video_gen_inputs"][0]
        assert inputs["first_frame_image"]["image_uri"] == "tos/first"
        assert inputs["end_frame_image"]["image_uri"] == "tos/last"
        assert submit["data"]["extend"]["root_model"] == "dreamina_ic_generate_video_model_vgfm_3.0"

    @pytest.mark.unit
    async def test_rejects_more_than_two_frames(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.generate_video("jimeng-video-3.0", "x", "tok", image_urls=["a", "b", "c"])


class TestChatCompletion:

    @pytest.mark.unit
    async def test_image_completion(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(10, [image_item(CAT_URL)]))
        request = ChatCompletionRequest(
            model="jimeng-4.0:1920x1080",
            messages=[{"role": "user", "content": "a cat"}]
        )

        result = await orchestrator.create_completion(request, "tok")

        assert result["object"] == "chat.completion"
        assert result["model"] == "jimeng-4.0:1920x1080"
        assert result["choices"][0]["message"]["content"] == f"![image_0]({CAT_URL})\n"
        submit = next(call for call in upstream_script.calls if call["uri"] == GENERATE_URI)
        core = draft_content(submit)["component_list"][0]["abilities"]["generate"]["core_param"]
        assert core["large_image_info"]["width"] == 1920

    @pytest.mark.unit
    async def test_video_model_routes_to_video(self, orchestrator, upstream_script):
        upstream_script.on(USER_CREDIT_URI, credit_response())
        upstream_script.on(GENERATE_URI, submit_response(HISTORY_ID))
        upstream_script.on(HISTORY_BY_IDS_URI, history_response(HISTORY_ID, history_record(10, [video_item(VIDEO_URL)])))
        request = ChatCompletionRequest(model="jimeng-video-3.0", messages=[{"role": "user", "content": "a dog"}])

        result = await orchestrator.create_completion(request, "tok")

        assert result["choices"][0]["message"]["content"] == f"![video]({VIDEO_URL})\n"

    @pytest.mark.unit
    async def test_zero_size_rejected_before_any_upstream_call(self, orchestrator, upstream_script):
        request = ChatCompletionRequest(model="jimeng-video-3.0:0x0", messages=[{"role": "user", "content": "a dog"}])

        with pytest.raises(ValidationError):
            await orchestrator.create_completion(request, "tok")

        assert upstream_script.calls == []

    @pytest.mark.unit
    async def test_empty_messages_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_completion(ChatCompletionRequest(messages=[]), "tok")

    @pytest.mark.unit
    async def test_stream(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(20), history_record(10, [image_item(CAT_URL)]))
        request = ChatCompletionRequest(model="jimeng-4.0", messages=[{"role": "user", "content": "a cat"}], stream=True)

        events = [event async for event in orchestrator.create_completion_stream(request, "tok")]

        assert events[-1] == DONE_EVENT
        bodies = [json.loads(event[len("data: "):]) for event in events[:-1]]
        assert any(CAT_URL in body["choices"][0]["delta"]["content"] for body in bodies)
        assert bodies[-1]["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.unit
    async def test_stream_reports_failure_in_final_chunk(self, orchestrator, upstream_script):
        script_image_job(upstream_script, history_record(30, fail_code=CONTENT_FILTER_CODE))
        request = ChatCompletionRequest(model="jimeng-4.0", messages=[{"role": "user", "content": "x"}], stream=True)

        events = [event async for event in orchestrator.create_completion_stream(request, "tok")]

        assert events[-1] == DONE_EVENT
        assert HISTORY_ID in events[-3]

    @pytest.mark.unit
    async def test_stream_with_no_messages_only_closes(self, orchestrator):
        request = ChatCompletionRequest(messages=[], stream=True)

        events = [event async for event in orchestrator.create_completion_stream(request, "tok")]
        assert events == [DONE_EVENT]
