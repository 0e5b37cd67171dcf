"""Image directory listing and MIME types."""
import os

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}

_MIME_MAP = {
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "png":  "image/png",
    "webp": "image/webp",
}


def is_image_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def mime_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower()
    return _MIME_MAP.get(ext, "image/jpeg")


def list_image_files(images_dir: str) -> list[str]:
    """Sorted names of raster images directly inside images_dir ([] if the directory is missing)."""
    if not os.path.isdir(images_dir):
        return []
    return sorted(
        name for name in os.listdir(images_dir)
        if is_image_file(name) and os.path.isfile(os.path.join(images_dir, name))
    )


def resolve_image_path(images_dir: str, filename: str) -> str | None:
    """Path of filename inside images_dir, or None if it is missing or escapes the directory."""
    if not filename or os.path.basename(filename) != filename:
        return None
    path = os.path.join(images_dir, filename)
    return path if os.path.isfile(path) else None
