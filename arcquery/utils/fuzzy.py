"""Phonetic keys for fuzzy person name matching."""

_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}


def soundex(word: str) -> str:
    """Soundex code of a single word (empty string for words without letters)."""
    letters = [c for c in word.upper() if "A" <= c <= "Z"]
    if not letters:
        return ""
    code = letters[0]
    last = _CODES.get(letters[0], "")
    for c in letters[1:]:
        digit = _CODES.get(c, "")
        if digit and digit != last:
            code += digit
        # H and W do not separate letters with the same code
        if c not in "HW":
            last = digit
    return (code + "000")[:4]


def fuzzy_key(person_name: str | None) -> str | None:
    """Phonetic key of a DICOM person name.

    Family, given and middle names are encoded in order and separated by a
    space, so a key built from a prefix of the components is a prefix of the
    full key.
    """
    if not person_name:
        return None
    alphabetic = str(person_name).split("=")[0]
    codes = []
    for component in alphabetic.split("^")[:3]:
        for word in component.replace("-", " ").split():
            code = soundex(word)
            if code:
                codes.append(code)
    return " ".join(codes) or None
