import math
from pathlib import PurePosixPath

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

# Pillow format name -> mime type
PIL_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

TOOL_SUFFIXES = {
    "compress": "_min",
    "convert": "_new",
    "md5": "_md5",
    "resize": "_resized",
    "crop": "_cropped",
    "rotate": "_rotated",
}


def extension_for_mime(mime: str) -> str:
    try:
        return EXTENSIONS[mime]
    except KeyError:
        raise ValueError(f"Unsupported output format: {mime}") from None


def output_filename(source_name: str, tool: str, mime: str) -> str:
    """Base name of the source, minus its extension, plus the tool suffix and
    an extension derived from the output mime.

    >>> output_filename("holiday/beach.PNG", "compress", "image/jpeg")
    'beach_min.jpg'
    """
    stem = PurePosixPath(source_name).stem or "image"
    return f"{stem}{TOOL_SUFFIXES[tool]}.{extension_for_mime(mime)}"


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    if num_bytes == 0:
        return "0 Bytes"
    k = 1024
    dm = max(decimals, 0)
    sizes = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes) / math.log(k))), len(sizes) - 1)
    value = round(num_bytes / k**i, dm)
    # Drop trailing zeros the way a float-to-string parse would ("1.50" -> "1.5")
    text = f"{value:.{dm}f}".rstrip("0").rstrip(".") if dm else str(int(value))
    return f"{text} {sizes[i]}"
