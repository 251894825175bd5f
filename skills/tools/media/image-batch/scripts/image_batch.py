#!/usr/bin/env python3

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import json
import re
import shlex
import subprocess
import sys
import textwrap
import uuid
from pathlib import Path
from typing import Any, Iterable, Literal, TextIO

from PIL import Image, ImageColor, ImageOps, ImageSequence, UnidentifiedImageError


PROG = "image-batch"
SCHEMA_VERSION = 1
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp", "gif"}
OUTPUT_FORMATS = {"png", "jpg", "webp", "gif"}
ALPHA_FORMATS = {"png", "webp"}
ANIMATED_FORMATS = {"gif", "webp"}
FIT_MODES = ("cover", "contain", "fill", "inside", "outside")
CONFIRM_THRESHOLD = 20
DEFAULT_QUALITY = 80
RESAMPLE = Image.Resampling.LANCZOS

PIL_FORMATS = {"png": "PNG", "jpg": "JPEG", "webp": "WEBP", "gif": "GIF"}

FORMAT_WORDS = {"png": "png", "jpg": "jpg", "jpeg": "jpg", "webp": "webp", "gif": "gif"}
FIT_WORDS = {
    "cover": "cover",
    "contain": "contain",
    "fill": "fill",
    "stretch": "fill",
    "inside": "inside",
    "fit": "inside",
    "outside": "outside",
}
COMPRESS_WORDS = {"compress", "compress-only", "optimize"}
RECURSIVE_WORDS = {"recursive", "-r", "--recursive"}
NUMBER_KEYWORDS = {"quality", "width", "height"}
KEY_ALIASES = {
    "dir": "directory",
    "directory": "directory",
    "format": "output_format",
    "to": "output_format",
    "width": "width",
    "w": "width",
    "height": "height",
    "h": "height",
    "size": "size",
    "quality": "quality",
    "q": "quality",
    "fit": "fit",
    "background": "background",
    "bg": "background",
}

SIZE_RE = re.compile(r"(\d+)?\s*[x×]\s*(\d+)?")
QUALITY_RE = re.compile(r"q(?:uality)?[:=]?(\d+)")
PERCENT_RE = re.compile(r"(\d+)%")
KEY_VALUE_RE = re.compile(r"([a-z][a-z_-]*)[=:](.+)")


def eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def now_run_id() -> str:
    stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"{stamp}-{short}"


def find_repo_root() -> Path:
    # Prefer git, then fall back to CWD.
    try:
        out = subprocess.check_output(
            ["git", "rev-parse", "--show-toplevel"],
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
        if out:
            return Path(out).resolve()
    except (OSError, subprocess.CalledProcessError):
        pass
    return Path.cwd().resolve()


class InstructionError(ValueError):
    pass


@dataclasses.dataclass(frozen=True)
class BatchOptions:
    directory: str = "."
    output_format: str | None = None
    width: int | None = None
    height: int | None = None
    quality: int | None = None
    fit: str | None = None
    square: bool = False
    compress_only: bool = False
    recursive: bool = False
    background: str | None = None
    auto_orient: bool = True
    strip_metadata: bool = False
    lossless: bool = False
    skip_larger: bool = False
    without_enlargement: bool = False

    @property
    def operations(self) -> tuple[str, ...]:
        ops: list[str] = []
        if self.square or self.fit == "cover":
            ops.append("crop")
        if self.width is not None or self.height is not None:
            ops.append("resize")
        if self.output_format is not None:
            ops.append("convert")
        if self.compress_only or self.quality is not None:
            ops.append("compress")
        return tuple(ops)

    @property
    def changes_geometry(self) -> bool:
        return self.square or self.width is not None or self.height is not None

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["operations"] = list(self.operations)
        return data


def parse_positive(name: str, value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise InstructionError(f"invalid {name}: {value!r} (expected an integer)") from None
    if n <= 0:
        raise InstructionError(f"invalid {name}: {value!r} (must be > 0)")
    return n


def parse_quality(value: str) -> int:
    q = parse_positive("quality", value)
    if q > 100:
        raise InstructionError(f"invalid quality: {value!r} (must be 1..100)")
    return q


def parse_size(value: str) -> tuple[int | None, int | None]:
    # WxH, Wx or xH
    m = SIZE_RE.fullmatch(value.strip().lower())
    if not m or (m.group(1) is None and m.group(2) is None):
        raise InstructionError(f"invalid size: {value!r} (expected WxH, Wx or xH)")
    w = parse_positive("width", m.group(1)) if m.group(1) is not None else None
    h = parse_positive("height", m.group(2)) if m.group(2) is not None else None
    return (w, h)


def parse_format(value: str) -> str:
    fmt = FORMAT_WORDS.get(value.strip().lower().lstrip("."))
    if fmt is None:
        raise InstructionError(f"unsupported format: {value!r} (supported: png|jpg|jpeg|webp|gif)")
    return fmt


def parse_fit(value: str) -> str:
    fit = FIT_WORDS.get(value.strip().lower())
    if fit is None:
        raise InstructionError(f"invalid fit: {value!r} (expected one of: {', '.join(FIT_MODES)})")
    return fit


def looks_like_path(token: str) -> bool:
    if token in {".", ".."}:
        return True
    if token.startswith(("/", "./", "../", "~")):
        return True
    if "/" in token and "=" not in token:
        return True
    return Path(token).is_dir()


def tokenize_instruction(words: list[str]) -> list[str]:
    """
    A single argv word is treated as a whole instruction and split with shell
    rules; several words were already split by the calling shell.
    """
    if len(words) == 1:
        try:
            return shlex.split(words[0])
        except ValueError as exc:
            raise InstructionError(f"invalid instruction: {exc}") from None
    return list(words)


def parse_instruction(text: str) -> BatchOptions:
    try:
        tokens = shlex.split(text)
    except ValueError as exc:
        raise InstructionError(f"invalid instruction: {exc}") from None
    return parse_tokens(tokens)


def parse_tokens(tokens: Iterable[str]) -> BatchOptions:
    tokens = list(tokens)
    fields: dict[str, Any] = {}

    def put(name: str, value: Any, token: str) -> None:
        if name in fields and fields[name] != value:
            raise InstructionError(f"conflicting {name}: {fields[name]!r} vs {value!r} (from {token!r})")
        fields[name] = value

    def put_key(key: str, value: str, token: str) -> None:
        name = KEY_ALIASES.get(key)
        if name is None:
            raise InstructionError(f"unknown option: {token!r}")
        if name == "directory":
            put("directory", str(Path(value).expanduser()), token)
        elif name == "output_format":
            put("output_format", parse_format(value), token)
        elif name in {"width", "height"}:
            put(name, parse_positive(name, value), token)
        elif name == "size":
            w, h = parse_size(value)
            if w is not None:
                put("width", w, token)
            if h is not None:
                put("height", h, token)
        elif name == "quality":
            put("quality", parse_quality(value.rstrip("%")), token)
        elif name == "fit":
            put("fit", parse_fit(value), token)
        elif name == "background":
            put("background", value, token)

    i = 0
    while i < len(tokens):
        token = tokens[i]
        word = token.lower()
        following = tokens[i + 1] if i + 1 < len(tokens) else None
        i += 1

        if word in FORMAT_WORDS:
            put("output_format", FORMAT_WORDS[word], token)
        elif word in FIT_WORDS:
            put("fit", FIT_WORDS[word], token)
        elif word == "square":
            put("square", True, token)
        elif word in COMPRESS_WORDS:
            put("compress_only", True, token)
        elif word in RECURSIVE_WORDS:
            put("recursive", True, token)
        elif word in NUMBER_KEYWORDS and following is not None and following.rstrip("%").isdigit():
            put_key(word, following, f"{token} {following}")
            i += 1
        elif m := QUALITY_RE.fullmatch(word):
            put("quality", parse_quality(m.group(1)), token)
        elif m := PERCENT_RE.fullmatch(word):
            put("quality", parse_quality(m.group(1)), token)
        elif (m := SIZE_RE.fullmatch(word)) and (m.group(1) or m.group(2)):
            w, h = parse_size(word)
            if w is not None:
                put("width", w, token)
            if h is not None:
                put("height", h, token)
        elif token.startswith(("/", "./", "../", "~")) or token in {".", ".."}:
            put("directory", str(Path(token).expanduser()), token)
        elif m := KEY_VALUE_RE.fullmatch(token):
            put_key(m.group(1).lower(), m.group(2), token)
        elif word.isdigit():
            raise InstructionError(
                f"ambiguous number: {token!r} (use {token}x, width={token} or quality={token})"
            )
        elif looks_like_path(token):
            put("directory", str(Path(token).expanduser()), token)
        # Anything else ("please", "images", "to", ...) is filler.

    return BatchOptions(**fields)


def merge_overrides(options: BatchOptions, **overrides: Any) -> BatchOptions:
    """Explicit CLI flags win over interpreted values; `None` means "not given"."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    return dataclasses.replace(options, **changes)


def validate_options(options: BatchOptions) -> None:
    if options.output_format is not None and options.output_format not in OUTPUT_FORMATS:
        raise InstructionError(f"unsupported format: {options.output_format!r}")
    if options.quality is not None and not 1 <= options.quality <= 100:
        raise InstructionError("quality must be 1..100")
    for name in ("width", "height"):
        value = getattr(options, name)
        if value is not None and value <= 0:
            raise InstructionError(f"{name} must be > 0")
    if options.fit is not None and options.fit not in FIT_MODES:
        raise InstructionError(f"fit must be one of: {', '.join(FIT_MODES)}")

    if options.compress_only:
        if options.output_format is not None:
            raise InstructionError(
                f"compress-only keeps the original format; drop the target format ({options.output_format})"
            )
        if options.changes_geometry or options.fit is not None:
            raise InstructionError("compress-only does not resize or crop")

    if options.square:
        if options.fit is not None:
            raise InstructionError("square and fit are mutually exclusive")
        if options.width is not None and options.height is not None and options.width != options.height:
            raise InstructionError("square takes a single side (width and height must match)")
    elif options.fit is not None and (options.width is None or options.height is None):
        raise InstructionError("fit is only valid when both width and height are given")

    if options.lossless and options.output_format not in {None, "webp"}:
        raise InstructionError("lossless is only supported for webp outputs")

    if not options.operations:
        raise InstructionError("nothing to do: give a target format, a size, square, a quality, or compress")


def ext_normalize(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext == "jpeg":
        return "jpg"
    return ext


def is_image_file(path: Path) -> bool:
    return path.suffix.lower().lstrip(".") in IMAGE_EXTENSIONS


def scan_directory(directory: str | Path, *, recursive: bool = False) -> list[Path]:
    root = Path(directory).expanduser()
    if not root.is_dir():
        raise ValueError(f"directory not found: {directory}")

    candidates = root.rglob("*") if recursive else root.iterdir()
    out: list[Path] = []
    for c in sorted(candidates, key=lambda x: str(x)):
        # Dotfiles include temp files left behind by an interrupted run.
        if any(part.startswith(".") for part in c.relative_to(root).parts):
            continue
        if not c.is_file() or not is_image_file(c):
            continue
        out.append(c.resolve())

    if not out:
        raise ValueError(f"no image files found in {directory}")
    return out


@dataclasses.dataclass(frozen=True)
class Preview:
    count: int
    total_bytes: int
    by_extension: dict[str, int]


def build_preview(files: list[Path]) -> Preview:
    total = 0
    by_ext: dict[str, int] = {}
    for f in files:
        total += f.stat().st_size
        ext = ext_normalize(f)
        by_ext[ext] = by_ext.get(ext, 0) + 1
    return Preview(count=len(files), total_bytes=total, by_extension=dict(sorted(by_ext.items())))


def needs_confirmation(count: int, *, in_place: bool = True) -> bool:
    return in_place and count > CONFIRM_THRESHOLD


def render_preview(preview: Preview, options: BatchOptions, *, directory: Path, dry_run: bool) -> str:
    breakdown = ", ".join(f"{ext}: {n}" for ext, n in preview.by_extension.items())
    lines = [
        f"{PROG}: {preview.count} image(s) in {directory} ({human_size(preview.total_bytes)})",
        f"{PROG}: by extension: {breakdown}",
        f"{PROG}: operations: {', '.join(options.operations)}",
    ]
    if dry_run:
        lines.append(f"{PROG}: dry run, nothing will be written")
    return "\n".join(lines)


def ask_confirmation(*, stdin: TextIO, stream: TextIO) -> bool:
    stream.write("Proceed? [y/N] ")
    stream.flush()
    answer = stdin.readline()
    return answer.strip().lower() in {"y", "yes"}


OutputModeName = Literal["in_place", "out_dir"]


@dataclasses.dataclass(frozen=True)
class OutputMode:
    mode: OutputModeName
    out_dir: Path | None = None

    @property
    def in_place(self) -> bool:
        return self.mode == "in_place"


def target_format(inp: Path, options: BatchOptions) -> str:
    return options.output_format or ext_normalize(inp)


def derive_out_path(inp: Path, options: BatchOptions, output_mode: OutputMode) -> Path:
    fmt = target_format(inp, options)
    # Same format keeps the original spelling (.jpeg, .PNG).
    name = inp.name if fmt == ext_normalize(inp) else f"{inp.stem}.{fmt}"
    if output_mode.in_place:
        return inp.parent / name
    assert output_mode.out_dir is not None
    out_dir = output_mode.out_dir.expanduser()
    if not out_dir.is_absolute():
        out_dir = (Path.cwd() / out_dir).resolve()
    return out_dir / name


def plan_outputs(
    inputs: list[Path],
    options: BatchOptions,
    output_mode: OutputMode,
    *,
    overwrite: bool,
) -> list[tuple[Path, Path]]:
    planned: list[tuple[Path, Path]] = []
    collisions: list[str] = []
    out_by_path: dict[Path, Path] = {}
    input_set = set(inputs)

    for inp in inputs:
        out = derive_out_path(inp, options, output_mode)
        if out in out_by_path:
            collisions.append(f"{out_by_path[out].name} and {inp.name} both map to {out.name}")
        out_by_path[out] = inp
        planned.append((inp, out))

    for inp, out in planned:
        if output_mode.in_place and out == inp:
            continue
        if overwrite or not out.exists():
            continue
        if output_mode.in_place and out in input_set:
            # Already reported as a mapping collision when it matters.
            continue
        collisions.append(f"output exists (pass --overwrite to replace): {out}")

    if collisions:
        raise ValueError("output collisions detected: " + "; ".join(collisions))
    return planned


def overwrites_inputs(planned: list[tuple[Path, Path]]) -> bool:
    """True when any planned output lands on one of the batch's own inputs."""
    inputs = {inp.resolve() for inp, _ in planned}
    return any(out.resolve() in inputs for _, out in planned)


def has_alpha(im: Image.Image) -> bool:
    if im.mode in {"RGBA", "LA", "PA", "RGBa", "La"}:
        return True
    return im.mode == "P" and "transparency" in im.info


def preflight(planned: list[tuple[Path, Path]], options: BatchOptions) -> None:
    """Reject batches that would need a --background before anything is written."""
    if options.background is not None:
        try:
            ImageColor.getrgb(options.background)
        except ValueError:
            raise ValueError(f"invalid --background color: {options.background!r}") from None
        return

    pads = options.fit == "contain" and not options.square
    for inp, out in planned:
        fmt = ext_normalize(out)
        if pads and fmt not in ALPHA_FORMATS:
            raise ValueError(
                f"contain fit requires padding background for {fmt} outputs (provide --background <color>)"
            )
        if fmt != "jpg":
            continue
        try:
            with Image.open(inp) as im:
                alpha = has_alpha(im)
        except (OSError, UnidentifiedImageError):
            continue
        if alpha:
            raise ValueError(
                f"alpha input cannot be converted to JPEG without a background (provide --background <color>): {inp.name}"
            )


@dataclasses.dataclass
class ImageInfo:
    format: str | None = None
    width: int | None = None
    height: int | None = None
    mode: str | None = None
    alpha: bool | None = None
    frames: int | None = None
    size_bytes: int | None = None


def probe_image(path: Path) -> ImageInfo:
    info = ImageInfo()
    try:
        info.size_bytes = path.stat().st_size
    except OSError:
        info.size_bytes = None

    try:
        with Image.open(path) as im:
            info.format = im.format
            info.width, info.height = im.size
            info.mode = im.mode
            info.alpha = has_alpha(im)
            info.frames = getattr(im, "n_frames", 1)
    except (OSError, UnidentifiedImageError):
        return info
    return info


@dataclasses.dataclass
class Decoded:
    frames: list[Image.Image]
    durations: list[int] | None = None
    loop: int | None = None
    exif: bytes | None = None
    icc_profile: bytes | None = None
    dropped_frames: int = 0


def load_image(path: Path, *, keep_animation: bool, auto_orient: bool) -> Decoded:
    try:
        im = Image.open(path)
    except UnidentifiedImageError:
        raise ValueError(f"unsupported format: {path.name}") from None

    with im:
        n_frames = getattr(im, "n_frames", 1)
        if keep_animation and n_frames > 1:
            frames = [frame.copy() for frame in ImageSequence.Iterator(im)]
            durations = [int(f.info.get("duration", im.info.get("duration", 100))) for f in frames]
        else:
            im.load()
            frames = [im.copy()]
            durations = None
        decoded = Decoded(
            frames=frames,
            durations=durations,
            loop=im.info.get("loop"),
            exif=im.info.get("exif"),
            icc_profile=im.info.get("icc_profile"),
            dropped_frames=0 if len(frames) == n_frames else n_frames - len(frames),
        )

    if auto_orient and len(decoded.frames) == 1:
        oriented = ImageOps.exif_transpose(decoded.frames[0])
        decoded.frames = [oriented]
        decoded.exif = oriented.info.get("exif", decoded.exif)
    return decoded


def center_square(im: Image.Image) -> Image.Image:
    side = min(im.size)
    left = (im.width - side) // 2
    top = (im.height - side) // 2
    return im.crop((left, top, left + side, top + side))


def proportional_size(orig_w: int, orig_h: int, width: int | None, height: int | None) -> tuple[int, int]:
    if width is not None:
        return (width, max(1, int(round(orig_h * (width / orig_w)))))
    assert height is not None
    return (max(1, int(round(orig_w * (height / orig_h)))), height)


def pad_color(im: Image.Image, out_fmt: str, background: str | None) -> tuple[Image.Image, Any]:
    if background is None and out_fmt in ALPHA_FORMATS:
        rgba = im.convert("RGBA")
        return (rgba, (0, 0, 0, 0))
    if background is None:
        raise ValueError("contain fit requires padding background for non-alpha outputs (provide --background <color>)")
    mode = "RGBA" if has_alpha(im) else "RGB"
    converted = im.convert(mode)
    return (converted, ImageColor.getcolor(background, mode))


def apply_geometry(im: Image.Image, options: BatchOptions, *, out_fmt: str) -> Image.Image:
    if not options.changes_geometry:
        return im
    if im.mode in {"P", "1"}:
        im = im.convert("RGBA" if has_alpha(im) else "RGB")

    width, height = options.width, options.height
    grow_ok = not options.without_enlargement

    if options.square:
        im = center_square(im)
        side = width or height
        if side is None or side == im.width or (side > im.width and not grow_ok):
            return im
        return im.resize((side, side), RESAMPLE)

    if width is None or height is None:
        tw, th = proportional_size(im.width, im.height, width, height)
        if (tw > im.width or th > im.height) and not grow_ok:
            return im
        return im.resize((tw, th), RESAMPLE)

    if im.width <= width and im.height <= height and not grow_ok:
        return im

    box = (width, height)
    fit = options.fit or "cover"
    if fit == "cover":
        return ImageOps.fit(im, box, method=RESAMPLE)
    if fit == "fill":
        return im.resize(box, RESAMPLE)
    if fit == "inside":
        return ImageOps.contain(im, box, method=RESAMPLE)
    if fit == "outside":
        return ImageOps.cover(im, box, method=RESAMPLE)
    padded, color = pad_color(im, out_fmt, options.background)
    return ImageOps.pad(padded, box, method=RESAMPLE, color=color)


def flatten_alpha(im: Image.Image, background: str) -> Image.Image:
    rgba = im.convert("RGBA")
    base = Image.new("RGB", rgba.size, ImageColor.getrgb(background))
    base.paste(rgba, mask=rgba.getchannel("A"))
    return base


def prepare_for_format(im: Image.Image, fmt: str, *, quality: int | None, background: str | None) -> Image.Image:
    if fmt == "jpg":
        if has_alpha(im):
            if background is None:
                raise ValueError("alpha input cannot be converted to JPEG without a background (provide --background <color>)")
            return flatten_alpha(im, background)
        if im.mode not in {"RGB", "L", "CMYK"}:
            return im.convert("RGB")
        return im

    if fmt == "webp":
        if im.mode not in {"RGB", "RGBA"}:
            return im.convert("RGBA" if has_alpha(im) else "RGB")
        return im

    if fmt == "png":
        if quality is not None and quality < 100:
            # Lossy PNG: reduce to a palette sized by quality.
            if im.mode not in {"RGB", "RGBA"}:
                im = im.convert("RGBA" if has_alpha(im) else "RGB")
            colors = max(2, round(256 * quality / 100))
            method = Image.Quantize.FASTOCTREE if im.mode == "RGBA" else Image.Quantize.MEDIANCUT
            return im.quantize(colors=colors, method=method)
        if im.mode == "CMYK":
            return im.convert("RGB")
        return im

    # gif: Pillow builds the palette on save.
    if im.mode == "CMYK":
        return im.convert("RGB")
    return im


def encode_image(
    frames: list[Image.Image],
    path: Path,
    fmt: str,
    *,
    quality: int | None,
    lossless: bool,
    exif: bytes | None,
    icc_profile: bytes | None,
    durations: list[int] | None,
    loop: int | None,
) -> None:
    q = DEFAULT_QUALITY if quality is None else quality
    kwargs: dict[str, Any] = {}
    if fmt == "jpg":
        kwargs.update(quality=q, optimize=True, progressive=True)
    elif fmt == "webp":
        if lossless:
            kwargs.update(lossless=True)
        else:
            kwargs.update(quality=q)
        kwargs["method"] = 6
    elif fmt == "png":
        kwargs.update(optimize=True, compress_level=9)
    elif fmt == "gif":
        kwargs["optimize"] = True
    else:
        raise ValueError(f"unsupported output format: {fmt}")

    if fmt != "gif":
        if exif:
            kwargs["exif"] = exif
        if icc_profile:
            kwargs["icc_profile"] = icc_profile

    first, rest = frames[0], frames[1:]
    if rest:
        kwargs.update(save_all=True, append_images=rest)
        if durations:
            kwargs["duration"] = durations
        kwargs["loop"] = 0 if loop is None else loop

    first.save(path, format=PIL_FORMATS[fmt], **kwargs)


def safe_write_path(path: Path) -> Path:
    # Write to a temp file next to the target, then rename.
    return path.with_name(f".{path.stem}.tmp-{uuid.uuid4().hex[:8]}{path.suffix}")


def atomic_replace(tmp: Path, final: Path) -> None:
    tmp.replace(final)


def reduction_pct(original: int, new: int) -> float:
    if original <= 0:
        return 0.0
    return (1 - new / original) * 100.0


def maybe_relpath(path: Path | None, base: Path) -> str | None:
    if path is None:
        return None
    try:
        return path.resolve().relative_to(base.resolve()).as_posix()
    except ValueError:
        return path.resolve().as_posix()


def transform_file(
    inp: Path,
    out: Path,
    options: BatchOptions,
    *,
    in_place: bool,
    dry_run: bool = False,
    base: Path | None = None,
) -> dict[str, Any]:
    base = base or inp.parent
    input_info = probe_image(inp)
    out_fmt = ext_normalize(out)
    warnings: list[str] = []
    item_error: str | None = None
    out_info: ImageInfo | None = None
    status = "ok"
    tmp: Path | None = None

    try:
        if dry_run:
            status = "planned"
        else:
            decoded = load_image(
                inp,
                keep_animation=out_fmt in ANIMATED_FORMATS,
                auto_orient=options.auto_orient,
            )
            if decoded.dropped_frames:
                warnings.append(f"animated input flattened to its first frame ({out_fmt} output)")
            if options.quality is not None and out_fmt == "gif":
                warnings.append("quality has no effect on gif outputs")

            frames = [apply_geometry(f, options, out_fmt=out_fmt) for f in decoded.frames]
            frames = [
                prepare_for_format(f, out_fmt, quality=options.quality, background=options.background)
                for f in frames
            ]
            if options.strip_metadata:
                # Some encoders fall back to the frame's own info.
                for f in frames:
                    f.info.pop("exif", None)
                    f.info.pop("icc_profile", None)

            tmp = safe_write_path(out)
            out.parent.mkdir(parents=True, exist_ok=True)
            encode_image(
                frames,
                tmp,
                out_fmt,
                quality=options.quality,
                lossless=options.lossless,
                exif=None if options.strip_metadata else decoded.exif,
                icc_profile=None if options.strip_metadata else decoded.icc_profile,
                durations=decoded.durations,
                loop=decoded.loop,
            )

            new_size = tmp.stat().st_size
            unchanged_shape = not options.changes_geometry and out_fmt == ext_normalize(inp)
            if (
                options.skip_larger
                and unchanged_shape
                and input_info.size_bytes is not None
                and new_size >= input_info.size_bytes
            ):
                tmp.unlink()
                tmp = None
                status = "skipped"
                warnings.append("re-encoded file was not smaller; original kept")
            else:
                atomic_replace(tmp, out)
                tmp = None
                if in_place and out != inp:
                    try:
                        inp.unlink()
                    except OSError as exc:
                        warnings.append(f"original not removed: {exc}")
                out_info = probe_image(out)
    except Exception as exc:
        item_error = str(exc) or exc.__class__.__name__
        status = "error"
    finally:
        if tmp is not None and tmp.exists():
            try:
                tmp.unlink()
            except OSError as exc:
                warnings.append(f"temp file not removed: {tmp.name} ({exc})")

    pct: float | None = None
    if status == "ok" and out_info and input_info.size_bytes is not None and out_info.size_bytes is not None:
        pct = round(reduction_pct(input_info.size_bytes, out_info.size_bytes), 2)

    return {
        "input_path": maybe_relpath(inp, base),
        "output_path": maybe_relpath(out, base),
        "status": status,
        "input_info": dataclasses.asdict(input_info),
        "output_info": dataclasses.asdict(out_info) if out_info else None,
        "reduction_pct": pct,
        "warnings": warnings,
        "error": item_error,
    }


def human_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(n) < 1024.0:
            return f"{n:.1f}{unit}"
        n /= 1024.0
    return f"{n:.1f}TB"


def summarize_totals(items: list[dict[str, Any]]) -> dict[str, Any]:
    counts = {"ok": 0, "skipped": 0, "error": 0, "planned": 0}
    before = 0
    after = 0
    for item in items:
        status = item.get("status") or "error"
        counts[status] = counts.get(status, 0) + 1
        if status != "ok":
            continue
        before += (item.get("input_info") or {}).get("size_bytes") or 0
        after += (item.get("output_info") or {}).get("size_bytes") or 0
    return {
        **counts,
        "bytes_before": before,
        "bytes_after": after,
        "reduction_pct": round(reduction_pct(before, after), 2),
    }


def process_batch(
    *,
    planned: list[tuple[Path, Path]],
    options: BatchOptions,
    directory: Path,
    output_mode: OutputMode,
    run_dir: Path | None,
    repo_root: Path,
    dry_run: bool,
    report_enabled: bool,
    overwrite: bool,
) -> dict[str, Any]:
    if not dry_run and output_mode.mode == "out_dir":
        assert output_mode.out_dir is not None
        output_mode.out_dir.expanduser().mkdir(parents=True, exist_ok=True)

    items: list[dict[str, Any]] = []
    for inp, out in planned:
        items.append(
            transform_file(
                inp,
                out,
                options,
                in_place=output_mode.in_place,
                dry_run=dry_run,
                base=directory,
            )
        )

    warnings = [f"{item['input_path']}: {w}" for item in items for w in item["warnings"]]
    totals = summarize_totals(items)

    report_path: str | None = None
    if report_enabled and run_dir is not None:
        report_file = run_dir / "report.md"
        report_file.write_text(
            render_report_md(
                run_id=run_dir.name,
                directory=directory,
                options=options,
                items=items,
                totals=totals,
                dry_run=dry_run,
            ),
            encoding="utf-8",
        )
        report_path = maybe_relpath(report_file, repo_root)

    summary = {
        "schema_version": SCHEMA_VERSION,
        "run_id": run_dir.name if run_dir else None,
        "cwd": str(Path.cwd()),
        "directory": str(directory),
        "operations": list(options.operations),
        "backend": f"pillow:{Image.__version__}",
        "report_path": report_path,
        "dry_run": dry_run,
        "options": {
            **options.to_dict(),
            "output_mode": output_mode.mode,
            "out_dir": str(output_mode.out_dir) if output_mode.out_dir else None,
            "overwrite": overwrite,
            "report": report_enabled,
        },
        "warnings": warnings,
        "totals": totals,
        "items": items,
    }

    if run_dir is not None:
        summary_file = run_dir / "summary.json"
        summary_file.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")

    return summary


def format_item_line(item: dict[str, Any]) -> str:
    line = f"{item.get('status')}: {item.get('input_path')} -> {item.get('output_path')}"
    in_size = (item.get("input_info") or {}).get("size_bytes")
    out_size = (item.get("output_info") or {}).get("size_bytes")
    if isinstance(in_size, int) and isinstance(out_size, int):
        line += f"  {human_size(in_size)} -> {human_size(out_size)} ({item.get('reduction_pct') or 0.0:.1f}%)"
    if item.get("error"):
        line += f"  error: {item['error']}"
    return line


def format_totals_line(totals: dict[str, Any]) -> str:
    return (
        f"total: {totals['ok']} ok, {totals['skipped']} skipped, {totals['error']} error; "
        f"{human_size(totals['bytes_before'])} -> {human_size(totals['bytes_after'])} "
        f"({totals['reduction_pct']:.1f}% reduction)"
    )


def render_human(summary: dict[str, Any], *, run_dir: str | None) -> str:
    lines = [
        f"directory: {summary.get('directory')}",
        f"operations: {', '.join(summary.get('operations') or [])}",
    ]
    if run_dir:
        lines.append(f"run_dir: {run_dir}")
    for item in summary.get("items") or []:
        lines.append(format_item_line(item))
    lines.append(format_totals_line(summary["totals"]))
    return "\n".join(lines) + "\n"


def render_report_md(
    *,
    run_id: str,
    directory: Path,
    options: BatchOptions,
    items: list[dict[str, Any]],
    totals: dict[str, Any],
    dry_run: bool,
) -> str:
    lines: list[str] = []
    lines.append(f"# Image Batch Report ({run_id})")
    lines.append("")
    lines.append(f"- Directory: `{directory}`")
    lines.append(f"- Operations: `{', '.join(options.operations)}`")
    lines.append(f"- Dry run: `{str(dry_run).lower()}`")
    lines.append("")

    lines.append("## Results")
    for item in items:
        lines.append(f"- `{item.get('status')}`: `{item.get('input_path')}` -> `{item.get('output_path')}`")
        in_size = (item.get("input_info") or {}).get("size_bytes")
        out_size = (item.get("output_info") or {}).get("size_bytes")
        if isinstance(in_size, int):
            lines.append(f"  - input_bytes: {in_size}")
        if isinstance(out_size, int):
            lines.append(f"  - output_bytes: {out_size}")
        if item.get("reduction_pct") is not None:
            lines.append(f"  - reduction: {item['reduction_pct']:.2f}%")
        for w in item.get("warnings") or []:
            lines.append(f"  - warning: {w}")
        if item.get("error"):
            lines.append(f"  - error: {item['error']}")
    lines.append("")

    lines.append("## Totals")
    lines.append(f"- ok: {totals['ok']}, skipped: {totals['skipped']}, error: {totals['error']}")
    lines.append(f"- bytes: {totals['bytes_before']} -> {totals['bytes_after']}")
    lines.append(f"- reduction: {totals['reduction_pct']:.2f}%")
    lines.append("")

    return "\n".join(lines) + "\n"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Batch-process the images in a directory: square/resize/crop, convert, compress.",
        epilog=textwrap.dedent(
            f"""\
            Examples:
              {PROG} "./photos to webp 1200x quality 75"
              {PROG} ./avatars square 256x --to png
              {PROG} ./shots compress q60 --yes

            Notes:
              - Files are rewritten in place (temp file, then rename) unless --out-dir is given.
              - Batches above {CONFIRM_THRESHOLD} files ask for confirmation; pass --yes when not on a terminal.
              - Flags override values read from the instruction words.
              - Use --json for machine-readable output (stdout JSON only; the preview goes to stderr).
            """
        ),
    )

    parser.add_argument(
        "instruction",
        nargs="*",
        help="Free-form instruction words (directory, format, WxH, square, cover|contain|fill|inside|outside, quality, compress)",
    )

    parser.add_argument("--dir", dest="directory", default=None, help="Directory to process (default: .)")
    parser.add_argument("--recursive", action="store_true", default=None, help="Recurse into subdirectories")

    parser.add_argument("--to", default=None, help="Target format: png|jpg|jpeg|webp|gif")
    parser.add_argument("--width", type=int, default=None, help="Target width")
    parser.add_argument("--height", type=int, default=None, help="Target height")
    parser.add_argument("--size", default=None, help="Target size WxH (Wx or xH for one side)")
    parser.add_argument("--fit", default=None, help="cover|contain|fill|inside|outside (with width + height)")
    parser.add_argument("--square", action="store_true", default=None, help="Extract a centered square")
    parser.add_argument("--quality", type=int, default=None, help="Quality 1..100 (jpg/webp; png < 100 quantizes)")
    parser.add_argument(
        "--compress-only",
        action="store_true",
        default=None,
        help="Re-encode in the original format and extension",
    )
    parser.add_argument("--background", default=None, help="Color for alpha flattening/padding when required")
    parser.add_argument("--lossless", action="store_true", default=None, help="(webp) Use lossless encoding")
    parser.add_argument(
        "--without-enlargement",
        action="store_true",
        default=None,
        help="Never upscale images smaller than the target",
    )
    parser.add_argument(
        "--skip-larger",
        action="store_true",
        default=None,
        help="Keep the original when re-encoding does not make it smaller",
    )
    parser.add_argument(
        "--no-auto-orient",
        dest="auto_orient",
        action="store_false",
        default=None,
        help="Do not apply EXIF orientation",
    )
    parser.add_argument("--strip-metadata", action="store_true", default=None, help="Remove EXIF/ICC from outputs")

    out_group = parser.add_argument_group("Output")
    out_group.add_argument("--out-dir", default=None, help="Write results to this directory instead of in place")
    out_group.add_argument("--overwrite", action="store_true", help="Replace existing outputs that are not part of the batch")
    out_group.add_argument("--yes", action="store_true", help=f"Skip confirmation for batches above {CONFIRM_THRESHOLD} files")
    out_group.add_argument("--dry-run", action="store_true", help="Print the plan; do not write outputs")
    out_group.add_argument("--json", action="store_true", help="Emit JSON summary to stdout and write summary.json under out/")
    out_group.add_argument("--report", action="store_true", help="Write report.md under out/ and include report_path in JSON")

    return parser


def options_from_args(args: argparse.Namespace) -> BatchOptions:
    options = parse_tokens(tokenize_instruction(args.instruction))

    width, height = args.width, args.height
    if args.size:
        size_w, size_h = parse_size(args.size)
        width = width if width is not None else size_w
        height = height if height is not None else size_h

    options = merge_overrides(
        options,
        directory=args.directory,
        recursive=args.recursive,
        output_format=parse_format(args.to) if args.to else None,
        width=width,
        height=height,
        fit=parse_fit(args.fit) if args.fit else None,
        square=args.square,
        quality=args.quality,
        compress_only=args.compress_only,
        background=args.background,
        lossless=args.lossless,
        without_enlargement=args.without_enlargement,
        skip_larger=args.skip_larger,
        auto_orient=args.auto_orient,
        strip_metadata=args.strip_metadata,
    )
    validate_options(options)
    return options


def main(argv: list[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        options = options_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
        return 2

    output_mode = (
        OutputMode(mode="out_dir", out_dir=Path(args.out_dir).expanduser())
        if args.out_dir
        else OutputMode(mode="in_place")
    )

    try:
        inputs = scan_directory(options.directory, recursive=options.recursive)
        planned = plan_outputs(inputs, options, output_mode, overwrite=args.overwrite)
        preflight(planned, options)
    except ValueError as exc:
        parser.error(str(exc))
        return 2

    directory = Path(options.directory).expanduser().resolve()
    preview = build_preview(inputs)
    eprint(render_preview(preview, options, directory=directory, dry_run=args.dry_run))

    destructive = output_mode.in_place or overwrites_inputs(planned)
    if not args.dry_run and not args.yes and needs_confirmation(preview.count, in_place=destructive):
        if not sys.stdin.isatty():
            parser.error(
                f"{preview.count} files exceed the confirmation threshold ({CONFIRM_THRESHOLD}); pass --yes to proceed"
            )
            return 2
        if not ask_confirmation(stdin=sys.stdin, stream=sys.stderr):
            eprint(f"{PROG}: aborted")
            return 1

    repo_root = find_repo_root()
    run_dir: Path | None = None
    if args.json or args.report:
        run_dir = repo_root / "out" / "image-batch" / "runs" / now_run_id()
        run_dir.mkdir(parents=True, exist_ok=True)

    try:
        summary = process_batch(
            planned=planned,
            options=options,
            directory=directory,
            output_mode=output_mode,
            run_dir=run_dir,
            repo_root=repo_root,
            dry_run=args.dry_run,
            report_enabled=args.report,
            overwrite=args.overwrite,
        )
    except OSError as exc:
        eprint(f"{PROG}: error: {exc}")
        return 1

    if args.json:
        sys.stdout.write(json.dumps(summary, ensure_ascii=False))
        sys.stdout.write("\n")
    else:
        run_dir_display = maybe_relpath(run_dir, repo_root) if run_dir else None
        sys.stdout.write(render_human(summary, run_dir=run_dir_display))

    return 1 if summary["totals"]["error"] else 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
