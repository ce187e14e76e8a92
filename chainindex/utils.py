def sanitize_text(text: str | None) -> str | None:
    """
    Sanitize text to be safe for database storage.
    Removes surrogate characters and null bytes.
    """
    if text is None:
        return None

    if "\x00" in text:
        text = text.replace("\x00", "")

    return text.encode('utf-8', 'ignore').decode('utf-8')


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def snippet(text: str, limit: int = 200) -> str:
    """First ``limit`` characters of ``text`` on one line, cut at a word boundary."""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    cut = flat[:limit].rsplit(" ", 1)[0]
    return cut + "..."
