"""File extension to MIME type resolution shared by the download and preview handlers."""

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "txt": "text/plain",
    "rtf": "application/rtf",
    "msg": "application/vnd.ms-outlook",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
}

# What a browser can render inline in an iframe or <img>
PREVIEWABLE_EXTENSIONS = frozenset({"pdf", "jpg", "jpeg", "png", "gif", "webp"})


def get_extension(file_name: str | None) -> str:
    """Lower-cased extension without the dot, or "" when there is none."""
    if not file_name:
        return ""
    base = file_name.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def get_content_type(file_name: str | None) -> str:
    return CONTENT_TYPES.get(get_extension(file_name), DEFAULT_CONTENT_TYPE)


def is_previewable(file_name: str | None) -> bool:
    return get_extension(file_name) in PREVIEWABLE_EXTENSIONS
