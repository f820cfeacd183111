import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize_reference(text: str) -> str:
    """Case-fold, trim and collapse whitespace. Diacritics are kept."""
    text = unicodedata.normalize("NFC", text or "")
    return _WHITESPACE.sub(" ", text).strip().casefold()


def fold_reference(text: str) -> str:
    """Normalize and strip diacritics, for case/diacritic-insensitive matching.

    "Ngọc Long" -> "ngoc long", "Đạt" -> "dat".
    """
    text = normalize_reference(text).replace("đ", "d")
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))
