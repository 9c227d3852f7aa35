from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


RENDER_JOB_DIR = Path(__file__).resolve().parents[1]
if str(RENDER_JOB_DIR) not in sys.path:
    sys.path.insert(0, str(RENDER_JOB_DIR))

from ffmpeg_ops import (  # noqa: E402
    UnsupportedOperation,
    build_ffmpeg_command,
    build_filter_plan,
    encoder_args,
)


PROXY_PRESET = {
    "name": "Proxy Preview",
    "quality": "proxy",
    "container": "mp4",
    "video": {"codec": "h264", "width": None, "height": 480, "crf": 28, "preset": "veryfast"},
    "audio": {"codec": "aac", "bitrate": "128k", "sample_rate": 48000, "channels": 2},
}

WEBM_PRESET = {
    "name": "Full Export",
    "quality": "standard",
    "container": "webm",
    "video": {"codec": "vp9", "width": 1280, "height": 720, "crf": 31, "preset": "good"},
    "audio": {"codec": "opus", "bitrate": "192k", "sample_rate": 48000, "channels": 2},
}


def _value_after(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


class TestFilterPlan:
    def test_trim_then_blur_keeps_order(self):
        plan = build_filter_plan(
            [
                {"type": "trim", "parameters": {"start": 0, "end": 5}},
                {"type": "blur", "parameters": {"radius": 3}},
            ]
        )

        assert plan.video_filters == [
            "trim=start=0.000:end=5.000,setpts=PTS-STARTPTS",
            "gblur=sigma=3",
        ]
        assert plan.audio_filters == ["atrim=start=0.000:end=5.000,asetpts=PTS-STARTPTS"]

    def test_trim_with_duration(self):
        plan = build_filter_plan([{"type": "trim", "parameters": {"start": 2, "duration": 3}}])

        assert plan.video_filters[0].startswith("trim=start=2.000:end=5.000")

    def test_trim_rejects_inverted_range(self):
        with pytest.raises(UnsupportedOperation):
            build_filter_plan([{"type": "trim", "parameters": {"start": 5, "end": 2}}])

    def test_speed_chains_atempo_above_two(self):
        plan = build_filter_plan([{"type": "speed", "parameters": {"factor": 4}}])

        assert plan.video_filters == ["setpts=PTS/4"]
        assert plan.audio_filters == ["atempo=2.0", "atempo=2"]

    def test_unit_speed_is_noop(self):
        plan = build_filter_plan([{"type": "speed", "parameters": {"factor": 1}}])

        assert plan.video_filters == []
        assert plan.audio_filters == []

    @pytest.mark.parametrize(
        "angle,expected",
        [(90, "transpose=1"), (180, "hflip,vflip"), (270, "transpose=2"), (-90, "transpose=2")],
    )
    def test_right_angle_rotation(self, angle, expected):
        plan = build_filter_plan([{"type": "rotate", "parameters": {"angle": angle}}])

        assert plan.video_filters == [expected]

    def test_flip_both(self):
        plan = build_filter_plan([{"type": "flip", "parameters": {"direction": "both"}}])

        assert plan.video_filters == ["hflip", "vflip"]

    def test_effect_wrapper_is_unwrapped(self):
        plan = build_filter_plan([{"type": "effect", "parameters": {"effect": "sepia"}}])

        assert plan.video_filters[0].startswith("colorchannelmixer=")

    def test_filter_wrapper_accepts_filter_type(self):
        plan = build_filter_plan([{"type": "filter", "params": {"filterType": "black_white"}}])

        assert plan.video_filters == ["hue=s=0"]

    def test_color_adjustment(self):
        plan = build_filter_plan(
            [{"type": "brightness", "parameters": {"brightness": 0.1, "contrast": 1.2}}]
        )

        assert plan.video_filters == ["eq=brightness=0.1:contrast=1.2:saturation=1"]

    def test_fade_uses_milliseconds(self):
        plan = build_filter_plan(
            [{"type": "fade", "parameters": {"fade_type": "out", "start_ms": 4000, "duration_ms": 1000}}]
        )

        assert plan.video_filters == ["fade=t=out:st=4.000:d=1.000"]
        assert plan.audio_filters == ["afade=t=out:st=4.000:d=1.000"]

    def test_volume_from_decibels(self):
        plan = build_filter_plan([{"type": "volume", "parameters": {"gain_db": 20}}])

        assert plan.audio_filters == ["volume=10"]

    def test_unknown_operation_is_rejected(self):
        with pytest.raises(UnsupportedOperation, match="#1"):
            build_filter_plan(
                [
                    {"type": "trim", "parameters": {"start": 0, "end": 1}},
                    {"type": "teleport", "parameters": {}},
                ]
            )

    def test_non_numeric_parameter_is_rejected(self):
        with pytest.raises(UnsupportedOperation):
            build_filter_plan([{"type": "blur", "parameters": {"radius": "lots"}}])


class TestCommand:
    def test_proxy_command(self):
        cmd = build_ffmpeg_command(
            "/src/in.mp4",
            [{"type": "grayscale", "parameters": {}}],
            PROXY_PRESET,
            "/out/proxy.mp4",
        )

        assert cmd[0] == "ffmpeg"
        assert _value_after(cmd, "-i") == "/src/in.mp4"
        assert _value_after(cmd, "-vf") == "hue=s=0,scale=-2:480"
        assert "-af" not in cmd
        assert _value_after(cmd, "-c:v") == "libx264"
        assert _value_after(cmd, "-crf") == "28"
        assert _value_after(cmd, "-preset") == "veryfast"
        assert _value_after(cmd, "-f") == "mp4"
        assert "+faststart" in cmd
        assert cmd[-1] == "/out/proxy.mp4"

    def test_webm_export_pads_to_frame(self):
        cmd = build_ffmpeg_command("/src/in.mp4", [], WEBM_PRESET, "/out/v3.webm")

        assert _value_after(cmd, "-vf") == (
            "scale=1280:720:force_original_aspect_ratio=decrease,"
            "pad=1280:720:(ow-iw)/2:(oh-ih)/2"
        )
        assert _value_after(cmd, "-c:v") == "libvpx-vp9"
        assert _value_after(cmd, "-deadline") == "good"
        assert _value_after(cmd, "-c:a") == "libopus"
        assert "-movflags" not in cmd

    def test_mute_drops_audio(self):
        cmd = build_ffmpeg_command(
            "/src/in.mp4",
            [{"type": "volume", "parameters": {"gain": 2}}, {"type": "mute", "parameters": {}}],
            PROXY_PRESET,
            "/out/proxy.mp4",
        )

        assert "-an" in cmd
        assert "-af" not in cmd
        assert "-c:a" not in cmd

    def test_encoder_defaults(self):
        args = encoder_args({})

        assert _value_after(args, "-c:v") == "libx264"
        assert _value_after(args, "-b:a") == "192k"
        assert _value_after(args, "-f") == "mp4"


class TestEntrypoint:
    def test_load_manifest_requires_output(self, tmp_path):
        import entrypoint

        manifest_path = tmp_path / "manifest.json"
        manifest_path.write_text(json.dumps({"source_path": "/src/in.mp4", "preset": PROXY_PRESET}))

        with pytest.raises(ValueError, match="output_path"):
            entrypoint.load_manifest(str(manifest_path))

    def test_render_reports_missing_source(self, tmp_path):
        import entrypoint

        manifest = {
            "source_path": str(tmp_path / "missing.mp4"),
            "output_path": str(tmp_path / "out.mp4"),
            "preset": PROXY_PRESET,
            "operations": [],
        }

        with pytest.raises(entrypoint.RenderError):
            entrypoint.render(manifest)
