import pytest
from uuid import uuid4
from datetime import datetime, timezone

from pydantic import ValidationError

from models.edit_models import AppendOperationsRequest, EditOperationSpec
from models.render_models import (
    AudioCodec,
    AudioSettings,
    ExportFormat,
    ExportRequest,
    RenderEvent,
    RenderJobListResponse,
    RenderJobResponse,
    RenderJobStatus,
    RenderJobType,
    RenderManifest,
    RenderPreset,
    RenderQuality,
    VideoCodec,
    VideoSettings,
    parse_resolution,
)


class TestVideoSettings:
    def test_default_settings(self):
        settings = VideoSettings()

        assert settings.codec == VideoCodec.H264
        assert settings.width is None
        assert settings.height is None
        assert settings.crf == 23
        assert settings.preset == "medium"
        assert settings.pixel_format == "yuv420p"

    def test_crf_validation(self):
        assert VideoSettings(crf=0).crf == 0
        assert VideoSettings(crf=51).crf == 51

        with pytest.raises(ValueError):
            VideoSettings(crf=-1)

        with pytest.raises(ValueError):
            VideoSettings(crf=52)


class TestAudioSettings:
    def test_default_settings(self):
        settings = AudioSettings()

        assert settings.codec == AudioCodec.AAC
        assert settings.bitrate == "192k"
        assert settings.sample_rate == 48000
        assert settings.channels == 2


class TestRenderPreset:
    def test_default_preset(self):
        preset = RenderPreset(name="Test")

        assert preset.quality == RenderQuality.STANDARD
        assert preset.container == ExportFormat.MP4
        assert preset.video.codec == VideoCodec.H264
        assert preset.audio.codec == AudioCodec.AAC

    def test_proxy_preview_factory(self):
        preset = RenderPreset.proxy_preview()

        assert preset.name == "Proxy Preview"
        assert preset.quality == RenderQuality.PROXY
        assert preset.video.width is None
        assert preset.video.height == 480
        assert preset.video.crf == 28
        assert preset.video.preset == "veryfast"
        assert preset.audio.bitrate == "128k"

    def test_full_export_factory(self):
        preset = RenderPreset.full_export()

        assert preset.name == "Full Export"
        assert preset.quality == RenderQuality.STANDARD
        assert (preset.video.width, preset.video.height) == (1920, 1080)
        assert preset.video.crf == 23

    def test_webm_export_uses_vp9_and_opus(self):
        preset = RenderPreset.full_export("1280x720", ExportFormat.WEBM)

        assert preset.container == ExportFormat.WEBM
        assert preset.video.codec == VideoCodec.VP9
        assert preset.audio.codec == AudioCodec.OPUS


class TestResolution:
    def test_parse(self):
        assert parse_resolution(" 1280x720 ") == (1280, 720)

    @pytest.mark.parametrize("value", ["1280", "1280x", "axb", "1281x720"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_resolution(value)


class TestExportRequest:
    def test_defaults(self):
        request = ExportRequest()

        assert request.version is None
        assert request.resolution == "1920x1080"
        assert request.format == ExportFormat.MP4

    def test_rejects_bad_resolution(self):
        with pytest.raises(ValidationError):
            ExportRequest(resolution="big")

    def test_rejects_unknown_format(self):
        with pytest.raises(ValidationError):
            ExportRequest(format="avi")


class TestEditOperationSpec:
    def test_params_alias(self):
        spec = EditOperationSpec.model_validate({"type": "blur", "params": {"radius": 2}})

        assert spec.model_dump() == {"type": "blur", "parameters": {"radius": 2}}

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            EditOperationSpec.model_validate({"type": "blur", "radius": 2})

    def test_append_request_needs_ops(self):
        with pytest.raises(ValidationError):
            AppendOperationsRequest(user_id="u1", ops=[])


class TestRenderJobResponse:
    def test_completed_job_response(self):
        now = datetime.now(timezone.utc)

        response = RenderJobResponse(
            job_id=uuid4(),
            project_id=uuid4(),
            job_type=RenderJobType.EXPORT,
            status=RenderJobStatus.COMPLETED,
            progress=100,
            version=3,
            output_key="export/p/v3.mp4",
            created_at=now,
            started_at=now,
            completed_at=now,
        )

        assert response.status == RenderJobStatus.COMPLETED
        assert response.cached is False
        assert response.options == {}

    def test_progress_bounds(self):
        with pytest.raises(ValidationError):
            RenderJobResponse(
                job_id=uuid4(),
                project_id=uuid4(),
                job_type=RenderJobType.PROXY,
                status=RenderJobStatus.PROCESSING,
                progress=101,
                version=1,
                created_at=datetime.now(timezone.utc),
            )

    def test_empty_list(self):
        response = RenderJobListResponse(ok=True, jobs=[], total=0)

        assert response.jobs == []
        assert response.total == 0


class TestRenderManifest:
    def test_manifest_round_trips_as_json(self):
        manifest = RenderManifest(
            job_id=uuid4(),
            project_id=uuid4(),
            version=2,
            source_path="/data/sources/ab/abcd.mp4",
            operations=[{"type": "trim", "parameters": {"start": 0, "end": 5}}],
            preset=RenderPreset.proxy_preview(),
            output_path="/data/tmp/out.mp4",
        )

        payload = manifest.model_dump(mode="json")

        assert payload["preset"]["container"] == "mp4"
        assert payload["preset"]["video"]["codec"] == "h264"
        assert payload["operations"][0]["type"] == "trim"


class TestRenderEvent:
    def test_sequence_must_be_non_negative(self):
        with pytest.raises(ValidationError):
            RenderEvent(
                event_id=uuid4(),
                project_id=uuid4(),
                job_id=uuid4(),
                job_type=RenderJobType.PROXY,
                version=1,
                status=RenderJobStatus.QUEUED,
                progress=0,
                sequence=-1,
                emitted_at=datetime.now(timezone.utc),
            )
