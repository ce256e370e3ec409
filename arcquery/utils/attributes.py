"""Attribute blob codec and merge helpers.

Attribute sets are pydicom ``Dataset`` objects. Stored blobs hold the dataset
encoded as explicit VR little endian, prefixed by a small frame header
(magic, payload length, CRC-32) so that truncated or corrupted rows are
detected before pydicom sees them.
"""

import copy
import struct
import zlib
from collections.abc import Iterable

from pydicom import Dataset
from pydicom.datadict import tag_for_keyword
from pydicom.dataelem import DataElement
from pydicom.filebase import DicomBytesIO
from pydicom.filereader import read_dataset
from pydicom.filewriter import write_dataset
from pydicom.multival import MultiValue
from pydicom.sequence import Sequence

from arcquery.exceptions import DecodingError, EncodingError

_MAGIC = b"ARQ1"
_HEADER = struct.Struct("<4sII")

# Derived query attributes whose values are sets, not ordered vectors
DERIVED_SET_KEYWORDS = frozenset(
    {"ModalitiesInStudy", "SOPClassesInStudy", "RetrieveAETitle", "OtherPatientIDs"}
)


def encode(ds: Dataset) -> bytes:
    """Encode an attribute set to its stored binary form.

    Args:
        ds: Attribute set to encode

    Returns:
        Framed explicit VR little endian encoding of ``ds``

    Raises:
        EncodingError: If an element value cannot be written
    """
    fp = DicomBytesIO()
    fp.is_little_endian = True
    fp.is_implicit_VR = False
    try:
        write_dataset(fp, ds)
    except (struct.error, TypeError, ValueError, OverflowError, AttributeError, OSError) as e:
        raise EncodingError(f"Cannot encode attribute set: {e}") from e
    payload = fp.getvalue()
    return _HEADER.pack(_MAGIC, len(payload), zlib.crc32(payload)) + payload


def decode(blob: bytes | None) -> Dataset:
    """Decode a stored blob back into an attribute set.

    The dataset is fully parsed before it is returned, so corrupt element
    values surface here and not later in the caller.

    Raises:
        DecodingError: If the blob is missing, truncated or corrupt
    """
    if not blob:
        raise DecodingError("Missing attribute blob")
    if len(blob) < _HEADER.size:
        raise DecodingError(f"Truncated attribute blob ({len(blob)} bytes)")

    magic, length, checksum = _HEADER.unpack_from(blob)
    payload = blob[_HEADER.size :]
    if magic != _MAGIC:
        raise DecodingError(f"Unknown attribute blob format {magic!r}")
    if len(payload) != length:
        raise DecodingError(f"Truncated attribute blob: expected {length} bytes, got {len(payload)}")
    if zlib.crc32(payload) != checksum:
        raise DecodingError("Attribute blob checksum mismatch")

    try:
        ds = read_dataset(DicomBytesIO(payload), is_implicit_VR=False, is_little_endian=True)
        # Convert every raw element now
        for _ in ds.iterall():
            pass
    except Exception as e:
        raise DecodingError(f"Corrupt attribute blob: {e}") from e
    return ds


def _dedup(values: Iterable) -> list:
    unique: list = []
    for value in values:
        if value not in unique:
            unique.append(value)
    return unique


def _normalize_element(elem: DataElement) -> DataElement:
    if elem.VR == "SQ":
        items = _dedup(elem.value)
        for item in items:
            for child in item:
                _normalize_element(child)
        elem.value = Sequence(items)
    elif elem.keyword in DERIVED_SET_KEYWORDS and isinstance(elem.value, MultiValue):
        elem.value = _dedup(elem.value)
    return elem


def merge_and_normalize(parent: Dataset, child: Dataset) -> Dataset:
    """Merge two attribute sets, the child's values taking precedence.

    Neither input is modified. Duplicate sequence items and duplicate values
    of derived set-valued attributes are collapsed.

    Args:
        parent: Attributes of the ancestor level
        child: Attributes of the descendant level

    Returns:
        New attribute set with all tags of both inputs
    """
    merged = Dataset()
    for elem in parent:
        merged.add(copy.deepcopy(elem))
    for elem in child:
        merged.add(copy.deepcopy(elem))
    for elem in merged:
        _normalize_element(elem)
    return merged


def filter_attributes(ds: Dataset, keywords: Iterable[str]) -> Dataset:
    """Project an attribute set onto an attribute filter.

    An empty filter keeps every attribute.
    """
    tags = {tag_for_keyword(keyword) for keyword in keywords}
    tags.discard(None)
    result = Dataset()
    for elem in ds:
        if not tags or elem.tag in tags:
            result.add(copy.deepcopy(elem))
    return result
