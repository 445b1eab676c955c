"""主动发送媒体的预处理。

按扩展名判断媒体类型并检查大小限制：

- image / video / file: 20MB
- voice: 2MB

超限时图片用 Pillow 重新压缩为 JPEG（质量 70，最长边 2000），视频和普通文件
打成 zip，语音直接报错。处理产生的临时文件由调用方在发送后清理。
"""

import tempfile
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from loguru import logger
from PIL import Image, UnidentifiedImageError

from dingtalk_connector.errors import MediaError


MediaType = Literal["image", "voice", "video", "file"]

IMAGE_EXTS = frozenset({"jpg", "jpeg", "png", "gif", "bmp"})
VOICE_EXTS = frozenset({"mp3", "amr", "wav"})
VIDEO_EXTS = frozenset({"mp4", "avi", "mov"})

MB = 1024 * 1024
SIZE_LIMITS: dict[str, int] = {
    "image": 20 * MB,
    "voice": 2 * MB,
    "video": 20 * MB,
    "file": 20 * MB,
}

JPEG_QUALITY = 70
MAX_IMAGE_SIDE = 2000


def detect_media_type(path: Path) -> MediaType:
    ext = path.suffix.lstrip(".").lower()
    if ext in IMAGE_EXTS:
        return "image"
    if ext in VOICE_EXTS:
        return "voice"
    if ext in VIDEO_EXTS:
        return "video"
    return "file"


@dataclass
class PreparedMedia:
    path: Path
    media_type: MediaType
    temp_files: list[Path] = field(default_factory=list)

    def cleanup(self) -> None:
        for f in self.temp_files:
            try:
                f.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Failed to remove temp file {f}: {e}")


def compress_image(src: Path, dst: Path, quality: int = JPEG_QUALITY, max_side: int = MAX_IMAGE_SIDE) -> Path:
    """重新编码为 JPEG 并把最长边缩到 ``max_side`` 以内。"""
    with Image.open(src) as img:
        img = img.convert("RGB")
        img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
        img.save(dst, format="JPEG", quality=quality, optimize=True)
    return dst


def zip_file(src: Path, dst: Path) -> Path:
    with zipfile.ZipFile(dst, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(src, arcname=src.name)
    return dst


def _size_mb(size: int) -> str:
    return f"{size / MB:.1f}MB"


def prepare_media(
    path: Path,
    media_type: Optional[MediaType] = None,
    tmp_dir: Optional[Path] = None,
) -> PreparedMedia:
    """检查并在需要时压缩待发送的文件。阻塞调用。

    Raises:
        MediaError: 文件不可读，或压缩后仍超限
    """
    path = Path(path)
    media_type = media_type or detect_media_type(path)
    try:
        size = path.stat().st_size
    except OSError:
        raise MediaError(f"文件不存在或无权访问: {path}")

    limit = SIZE_LIMITS[media_type]
    if size <= limit:
        return PreparedMedia(path=path, media_type=media_type)

    tmp_dir = Path(tmp_dir or tempfile.gettempdir())
    stamp = int(time.time() * 1000)

    if media_type == "voice":
        raise MediaError(f"语音文件 {_size_mb(size)} 超过 2MB 限制，请裁剪后再发。")

    if media_type == "image":
        dst = tmp_dir / f"dingtalk-compressed-{stamp}.jpg"
        prepared = PreparedMedia(path=dst, media_type="image", temp_files=[dst])
        try:
            compress_image(path, dst)
        except (OSError, UnidentifiedImageError) as e:
            prepared.cleanup()
            raise MediaError(f"图片 {_size_mb(size)} 超过 20MB 限制，压缩失败: {e}") from e
        new_size = dst.stat().st_size
        if new_size > limit:
            prepared.cleanup()
            raise MediaError(f"图片压缩后仍超过 20MB（{_size_mb(new_size)}），建议先裁剪或降低分辨率。")
        logger.info(f"Image compressed: {_size_mb(size)} -> {_size_mb(new_size)}")
        return prepared

    # video / file
    dst = tmp_dir / f"dingtalk-{path.name}-{stamp}.zip"
    prepared = PreparedMedia(path=dst, media_type="file", temp_files=[dst])
    try:
        zip_file(path, dst)
    except (OSError, zipfile.BadZipFile) as e:
        prepared.cleanup()
        raise MediaError(f"文件 {_size_mb(size)} 超过 20MB 限制，且 zip 压缩失败: {e}") from e
    new_size = dst.stat().st_size
    if new_size > SIZE_LIMITS["file"]:
        prepared.cleanup()
        raise MediaError(f"文件 {_size_mb(size)} 压缩后仍超过 20MB，建议改用网盘分享链接。")
    logger.info(f"File zipped: {_size_mb(size)} -> {_size_mb(new_size)}")
    return prepared


def build_media_message(media_type: MediaType, media_id: str, path: Path) -> tuple[str, dict]:
    """机器人消息的 ``(msgKey, msgParam)``。"""
    if media_type == "image":
        return "sampleImageMsg", {"photoURL": media_id}
    if media_type == "voice":
        return "sampleAudio", {"mediaId": media_id, "duration": "0"}
    ext = path.suffix.lstrip(".").lower() or ("mp4" if media_type == "video" else "bin")
    return "sampleFile", {"mediaId": media_id, "fileName": path.name, "fileType": ext}
