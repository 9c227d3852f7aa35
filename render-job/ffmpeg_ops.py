"""Translate an edit-decision list and a quality preset into an ffmpeg command."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable


class UnsupportedOperation(ValueError):
    pass


@dataclass
class FilterPlan:
    video_filters: list[str] = field(default_factory=list)
    audio_filters: list[str] = field(default_factory=list)
    mute: bool = False


def _float(params: dict[str, Any], *names: str, default: float | None = None) -> float | None:
    for name in names:
        if name in params and params[name] is not None:
            try:
                return float(params[name])
            except (TypeError, ValueError) as exc:
                raise UnsupportedOperation(f"Parameter {name!r} must be numeric") from exc
    return default


def _atempo_chain(factor: float) -> list[str]:
    # atempo only accepts 0.5..2.0 per instance.
    filters: list[str] = []
    remaining = factor
    while remaining > 2.0:
        filters.append("atempo=2.0")
        remaining /= 2.0
    while remaining < 0.5:
        filters.append("atempo=0.5")
        remaining /= 0.5
    filters.append(f"atempo={remaining:.6g}")
    return filters


def _trim(plan: FilterPlan, params: dict[str, Any]) -> None:
    start = _float(params, "start", "start_seconds", default=0.0)
    end = _float(params, "end", "end_seconds")
    duration = _float(params, "duration", "duration_seconds")
    if end is None and duration is not None:
        end = start + duration
    if start < 0 or (end is not None and end <= start):
        raise UnsupportedOperation("trim needs 0 <= start < end")

    bounds = f"start={start:.3f}" + (f":end={end:.3f}" if end is not None else "")
    plan.video_filters.append(f"trim={bounds},setpts=PTS-STARTPTS")
    plan.audio_filters.append(f"atrim={bounds},asetpts=PTS-STARTPTS")


def _speed(plan: FilterPlan, params: dict[str, Any]) -> None:
    factor = _float(params, "factor", "speed", "rate", default=1.0)
    if factor <= 0:
        raise UnsupportedOperation("speed factor must be > 0")
    if abs(factor - 1.0) < 1e-6:
        return
    plan.video_filters.append(f"setpts=PTS/{factor:.6g}")
    plan.audio_filters.extend(_atempo_chain(factor))


def _scale(plan: FilterPlan, params: dict[str, Any]) -> None:
    width = int(_float(params, "width", "w", default=-2))
    height = int(_float(params, "height", "h", default=-2))
    if width == -2 and height == -2:
        raise UnsupportedOperation("scale needs width or height")
    plan.video_filters.append(f"scale={width}:{height}")


def _crop(plan: FilterPlan, params: dict[str, Any]) -> None:
    width = _float(params, "width", "w")
    height = _float(params, "height", "h")
    if width is None or height is None:
        raise UnsupportedOperation("crop needs width and height")
    x = _float(params, "x", default=None)
    y = _float(params, "y", default=None)
    expr = f"crop={int(width)}:{int(height)}"
    if x is not None and y is not None:
        expr += f":{int(x)}:{int(y)}"
    plan.video_filters.append(expr)


def _rotate(plan: FilterPlan, params: dict[str, Any]) -> None:
    angle = _float(params, "angle", "degrees", default=0.0)
    normalized = angle % 360
    if abs(normalized) < 1e-6:
        return
    if abs(normalized - 90) < 1e-6:
        plan.video_filters.append("transpose=1")
    elif abs(normalized - 180) < 1e-6:
        plan.video_filters.append("hflip,vflip")
    elif abs(normalized - 270) < 1e-6:
        plan.video_filters.append("transpose=2")
    else:
        fill = str(params.get("fillcolor", "black"))
        plan.video_filters.append(
            f"rotate={angle}*PI/180:ow=rotw({angle}*PI/180):"
            f"oh=roth({angle}*PI/180):fillcolor={fill}"
        )


def _flip(plan: FilterPlan, params: dict[str, Any]) -> None:
    direction = str(params.get("direction", "horizontal")).lower()
    horizontal = bool(params.get("horizontal", direction in {"horizontal", "both"}))
    vertical = bool(params.get("vertical", direction in {"vertical", "both"}))
    if horizontal:
        plan.video_filters.append("hflip")
    if vertical:
        plan.video_filters.append("vflip")


def _blur(plan: FilterPlan, params: dict[str, Any]) -> None:
    radius = _float(params, "radius", "sigma", "amount", default=5.0)
    radius = max(0.1, min(radius, 50.0))
    plan.video_filters.append(f"gblur=sigma={radius:.3g}")


def _sharpen(plan: FilterPlan, params: dict[str, Any]) -> None:
    amount = _float(params, "amount", default=1.0)
    radius = int(_float(params, "radius", default=5))
    radius = max(3, min(radius, 13))
    if radius % 2 == 0:
        radius += 1
    plan.video_filters.append(
        f"unsharp=luma_msize_x={radius}:luma_msize_y={radius}:luma_amount={amount}"
    )


def _grayscale(plan: FilterPlan, params: dict[str, Any]) -> None:
    plan.video_filters.append("hue=s=0")


def _sepia(plan: FilterPlan, params: dict[str, Any]) -> None:
    plan.video_filters.append(
        "colorchannelmixer=0.393:0.769:0.189:0:"
        "0.349:0.686:0.168:0:"
        "0.272:0.534:0.131:0"
    )


def _color(plan: FilterPlan, params: dict[str, Any]) -> None:
    brightness = _float(params, "brightness", default=0.0)
    contrast = _float(params, "contrast", default=1.0)
    saturation = _float(params, "saturation", default=1.0)
    if not -1.0 <= brightness <= 1.0:
        raise UnsupportedOperation("brightness must be within -1..1")
    plan.video_filters.append(
        f"eq=brightness={brightness:.3g}:contrast={contrast:.3g}:saturation={saturation:.3g}"
    )


def _fade(plan: FilterPlan, params: dict[str, Any]) -> None:
    fade_type = str(params.get("fade_type", params.get("direction", "in"))).lower()
    if fade_type not in {"in", "out"}:
        raise UnsupportedOperation("fade_type must be 'in' or 'out'")
    start = _float(params, "start", default=None)
    if start is None:
        start = (_float(params, "start_ms", default=0.0)) / 1000.0
    duration = _float(params, "duration", default=None)
    if duration is None:
        duration = (_float(params, "duration_ms", default=500.0)) / 1000.0
    plan.video_filters.append(f"fade=t={fade_type}:st={start:.3f}:d={duration:.3f}")
    plan.audio_filters.append(f"afade=t={fade_type}:st={start:.3f}:d={duration:.3f}")


def _volume(plan: FilterPlan, params: dict[str, Any]) -> None:
    if "gain" in params:
        gain = _float(params, "gain")
    else:
        gain = 10 ** (_float(params, "gain_db", default=0.0) / 20)
    if gain < 0:
        raise UnsupportedOperation("gain must be >= 0")
    plan.audio_filters.append(f"volume={gain:.6g}")


def _mute(plan: FilterPlan, params: dict[str, Any]) -> None:
    plan.mute = True


OPERATIONS: dict[str, Callable[[FilterPlan, dict[str, Any]], None]] = {
    "trim": _trim,
    "speed": _speed,
    "scale": _scale,
    "resize": _scale,
    "crop": _crop,
    "rotate": _rotate,
    "flip": _flip,
    "blur": _blur,
    "gaussian-blur": _blur,
    "sharpen": _sharpen,
    "grayscale": _grayscale,
    "black_white": _grayscale,
    "sepia": _sepia,
    "brightness": _color,
    "contrast": _color,
    "saturation": _color,
    "color": _color,
    "fade": _fade,
    "volume": _volume,
    "mute": _mute,
}


def _resolve(op: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    op_type = str(op.get("type", "")).strip().lower()
    params = dict(op.get("parameters") or op.get("params") or {})
    # Older clients wrap named effects and filters.
    if op_type == "effect":
        op_type = str(params.pop("effect", "")).strip().lower()
    elif op_type == "filter":
        op_type = str(params.pop("filterType", params.pop("filter_type", ""))).strip().lower()
    return op_type, params


def build_filter_plan(operations: list[dict[str, Any]]) -> FilterPlan:
    plan = FilterPlan()
    for index, op in enumerate(operations):
        op_type, params = _resolve(op)
        handler = OPERATIONS.get(op_type)
        if handler is None:
            raise UnsupportedOperation(f"Unsupported operation #{index}: {op_type or '<empty>'}")
        handler(plan, params)
    return plan


VIDEO_ENCODERS = {"h264": "libx264", "h265": "libx265", "vp9": "libvpx-vp9"}
AUDIO_ENCODERS = {"aac": "aac", "opus": "libopus"}


def _output_scale(video: dict[str, Any]) -> str | None:
    width = video.get("width")
    height = video.get("height")
    if width and height:
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        )
    if height:
        return f"scale=-2:{height}"
    if width:
        return f"scale={width}:-2"
    return None


def encoder_args(preset: dict[str, Any], mute: bool = False) -> list[str]:
    video = preset.get("video") or {}
    audio = preset.get("audio") or {}
    container = preset.get("container", "mp4")

    codec = VIDEO_ENCODERS.get(video.get("codec", "h264"), "libx264")
    args = ["-c:v", codec]
    if codec == "libvpx-vp9":
        args += ["-b:v", "0", "-deadline", str(video.get("preset") or "good")]
    else:
        args += ["-preset", str(video.get("preset") or "medium")]
    if video.get("crf") is not None:
        args += ["-crf", str(video["crf"])]
    args += ["-pix_fmt", str(video.get("pixel_format") or "yuv420p")]

    if mute:
        args += ["-an"]
    else:
        args += [
            "-c:a",
            AUDIO_ENCODERS.get(audio.get("codec", "aac"), "aac"),
            "-b:a",
            str(audio.get("bitrate") or "192k"),
            "-ar",
            str(audio.get("sample_rate") or 48000),
            "-ac",
            str(audio.get("channels") or 2),
        ]

    if container in {"mp4", "mov"}:
        args += ["-movflags", "+faststart"]
    args += ["-f", container]
    return args


def build_ffmpeg_command(
    source_path: str,
    operations: list[dict[str, Any]],
    preset: dict[str, Any],
    output_path: str,
    ffmpeg_bin: str = "ffmpeg",
) -> list[str]:
    plan = build_filter_plan(operations)

    video_filters = list(plan.video_filters)
    scale = _output_scale(preset.get("video") or {})
    if scale:
        video_filters.append(scale)

    cmd = [ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error", "-i", source_path]
    if video_filters:
        cmd += ["-vf", ",".join(video_filters)]
    if plan.audio_filters and not plan.mute:
        cmd += ["-af", ",".join(plan.audio_filters)]
    cmd += encoder_args(preset, mute=plan.mute)
    cmd.append(output_path)
    return cmd
