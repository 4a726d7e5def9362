import logging
import math
import struct
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import *

# optional decompressors
try:
    import lzo  # type: ignore
except Exception:  # pragma: no cover
    lzo = None  # lazy check later

try:
    import lz4.block as lz4b  # type: ignore
except Exception:  # pragma: no cover
    lz4b = None

try:
    import zstandard as zstd  # type: ignore
except Exception:  # pragma: no cover
    zstd = None

LOGGER = logging.getLogger(__name__)

SAVE_VERSION = 0x10
BODY_OFFSET = 1024  # compressed body start, not derived from the header
CHUNK_MAGIC = 0x9E2A83C1
CHUNK_HEADER_SIZE = 24
TEMPLATE_PARAMS_SIZE = 64
NAME_GUARD_SIZE = 8
SENTINEL = "None"
ERROR_STRING = "<error>"


class SaveFormatError(ValueError):
    """Base class of every decode failure. ``offset`` is where it was detected."""

    def __init__(self, message: str, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (offset 0x{offset:x})"
        super().__init__(message)
        self.offset = offset

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class FormatVersionMismatch(SaveFormatError):
    pass


class ChunkMagicMismatch(SaveFormatError):
    pass


class DecompressionFailure(SaveFormatError):
    pass


class DecompressedSizeMismatch(SaveFormatError):
    pass


class StringLengthMismatch(SaveFormatError):
    """Reported only; the string is replaced by ``ERROR_STRING``."""


class MissingSentinel(SaveFormatError):
    pass


class UnexpectedNonZeroReservedField(SaveFormatError):
    """Reported for property fields, raised for the name table guard."""


class UnexpectedNonEmptyTable(SaveFormatError):
    pass


class StaticArrayIndexInconsistency(SaveFormatError):
    pass


class UnknownPropertyType(SaveFormatError):
    """Reported only; the payload is kept in an UnknownProperty."""


class PropertySizeMismatch(SaveFormatError):
    pass


class BufferOverrun(SaveFormatError):
    pass


def _report(log: logging.Logger, kind: Type[SaveFormatError], message: str, offset: int) -> None:
    log.warning("%s: %s at offset 0x%x", kind.__name__, message, offset)


def _ensure(data: bytes, offset: int, count: int, end: Optional[int]) -> None:
    limit = len(data) if end is None else min(end, len(data))
    if count < 0 or offset + count > limit:
        raise BufferOverrun(
            f"Reading {count} byte(s) would pass the bound 0x{limit:x}", offset)


def _read_u32(data: bytes, offset: int, end: Optional[int] = None) -> Tuple[int, int]:
    _ensure(data, offset, 4, end)
    return struct.unpack_from('<I', data, offset)[0], offset + 4


def _read_i32(data: bytes, offset: int, end: Optional[int] = None) -> Tuple[int, int]:
    _ensure(data, offset, 4, end)
    return struct.unpack_from('<i', data, offset)[0], offset + 4


def _read_float(data: bytes, offset: int, end: Optional[int] = None) -> Tuple[float, int]:
    _ensure(data, offset, 4, end)
    return struct.unpack_from('<f', data, offset)[0], offset + 4


def _read_bool(data: bytes, offset: int, end: Optional[int] = None) -> Tuple[bool, int]:
    value, offset = _read_u32(data, offset, end)
    return value != 0, offset


def _read_bytes(data: bytes, offset: int, count: int, end: Optional[int] = None) -> Tuple[bytes, int]:
    _ensure(data, offset, count, end)
    return bytes(data[offset: offset + count]), offset + count


def _utf16_units(raw: bytes) -> int:
    for i in range(0, len(raw) - 1, 2):
        if raw[i] == 0 and raw[i + 1] == 0:
            return i // 2
    return len(raw) // 2


def _read_string(data: bytes, offset: int, end: Optional[int] = None,
                 log: logging.Logger = LOGGER) -> Tuple[str, int]:
    """Read a length-prefixed string. The length counts the trailing terminator.

    A negative length denotes UTF-16LE with -length code units. If the content
    does not end exactly at the terminator the mismatch is reported and
    ``ERROR_STRING`` is returned; the cursor advances past the declared length
    either way so later offsets stay inspectable.
    """
    start = offset
    strlen, offset = _read_i32(data, offset, end)
    if strlen == 0:
        return "", offset
    if strlen < 0:
        count = -strlen
        raw, offset = _read_bytes(data, offset, count * 2, end)
        actual = _utf16_units(raw)
        encoding = 'utf-16-le'
        content = raw[: actual * 2]
    else:
        count = strlen
        raw, offset = _read_bytes(data, offset, count, end)
        actual = raw.find(b'\x00')
        if actual == -1:
            actual = count
        encoding = 'latin-1'
        content = raw[:actual]

    if actual != count - 1:
        _report(log, StringLengthMismatch,
                f"expected length {count - 1} but got {actual}", start)
        return ERROR_STRING, offset
    return content.decode(encoding, errors='replace'), offset


def _check_reserved(value: int, what: str, offset: int, log: logging.Logger) -> None:
    if value != 0:
        _report(log, UnexpectedNonZeroReservedField,
                f"{what} is 0x{value:x}", offset)


def _expect_size(name: str, prop_size: int, expected: int, offset: int) -> None:
    if prop_size != expected:
        raise PropertySizeMismatch(
            f"Property '{name}' declares size {prop_size}, expected {expected}", offset)


def _read_property(data: bytes, offset: int, end: int,
                   log: logging.Logger = LOGGER) -> Tuple[Optional['Property'], int]:
    start = offset
    prop_name, offset = _read_string(data, offset, end, log)
    unknown1, offset = _read_u32(data, offset, end)
    _check_reserved(unknown1, f"reserved field of '{prop_name}'", start, log)

    if prop_name == SENTINEL:
        return None, offset

    prop_type, offset = _read_string(data, offset, end, log)
    unknown2, offset = _read_u32(data, offset, end)
    _check_reserved(unknown2, f"type reserved field of '{prop_name}'", start, log)

    prop_size, offset = _read_u32(data, offset, end)
    array_index, offset = _read_u32(data, offset, end)

    return PropertyFactory.create_property(
        name=prop_name,
        prop_type=prop_type,
        prop_size=prop_size,
        array_index=array_index,
        data=data,
        offset=offset,
        end=end,
        log=log,
    )


def _append_property(properties: List['Property'], prop: 'Property', offset: int) -> None:
    """Append ``prop``, folding consecutive same-named indexed entries into a static array."""
    if prop.array_index == 0:
        properties.append(prop)
        return

    last = properties[-1] if properties else None
    if last is None or last.name != prop.name:
        raise StaticArrayIndexInconsistency(
            f"Static array index {prop.array_index} of '{prop.name}' does not follow a property of that name",
            offset)

    if isinstance(last, StaticArrayProperty):
        if prop.array_index != len(last):
            raise StaticArrayIndexInconsistency(
                f"Static array '{prop.name}' expected index {len(last)} but got {prop.array_index}", offset)
        last.add_property(prop)
    else:
        if prop.array_index != 1:
            raise StaticArrayIndexInconsistency(
                f"Static array '{prop.name}' must start at index 1, got {prop.array_index}", offset)
        properties[-1] = StaticArrayProperty(prop.name, [last, prop])


def _read_properties(data: bytes, offset: int, size: int, log: logging.Logger = LOGGER,
                     end: Optional[int] = None) -> Tuple[List['Property'], int]:
    """Read a "None"-terminated property list confined to ``[offset, offset + size)``."""
    _ensure(data, offset, size, end)
    end_offset = offset + size
    properties: List[Property] = []
    while offset < end_offset:
        start = offset
        prop, offset = _read_property(data, offset, end_offset, log)

        if prop is None:
            break

        _append_property(properties, prop, start)

    return properties, offset


class Property(ABC):
    synthetic = False

    def __init__(self, name: str, size: int, array_index: int = 0):
        self._name = name
        self._size = size
        self._array_index = array_index

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._size

    @property
    def array_index(self) -> int:
        return self._array_index

    @property
    def type_name(self) -> str:
        return self.__class__.__name__

    @property
    @abstractmethod
    def value(self) -> Any:
        pass

    @classmethod
    @abstractmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['Property', int]:
        pass

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self):
        return str(self)


class ObjectProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, value: bytes):
        super().__init__(name, size, array_index)
        self._value = value

    @property
    def value(self) -> bytes:
        return self._value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['ObjectProperty', int]:
        value, offset = _read_bytes(data, offset, prop_size, end)
        return cls(name=name, size=prop_size, array_index=array_index, value=value), offset

    def __str__(self):
        return f"ObjectProperty(name={self._name}, value=<bytes len={len(self._value)}>)"


class IntProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, value: int):
        super().__init__(name, size, array_index)
        self._value = value

    @property
    def value(self) -> int:
        return self._value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['IntProperty', int]:
        _expect_size(name, prop_size, 4, offset)
        value, offset = _read_i32(data, offset, end)
        return cls(name=name, size=prop_size, array_index=array_index, value=value), offset

    def __str__(self):
        return f"IntProperty(name={self._name}, value={self._value})"


class ByteProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, enum_type: str, enum_value: str,
                 ext_value: int):
        super().__init__(name, size, array_index)
        self._enum_type = enum_type
        self._enum_value = enum_value
        self._ext_value = ext_value

    @property
    def value(self) -> str:
        return self._enum_value

    @property
    def enum_type(self) -> str:
        return self._enum_type

    @property
    def ext_value(self) -> int:
        return self._ext_value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['ByteProperty', int]:
        start = offset
        enum_type, offset = _read_string(data, offset, end, log)
        inner, offset = _read_u32(data, offset, end)
        _check_reserved(inner, f"enum reserved field of '{name}'", start, log)
        enum_value, offset = _read_string(data, offset, end, log)
        ext_value, offset = _read_u32(data, offset, end)
        return cls(name=name, size=prop_size, array_index=array_index, enum_type=enum_type,
                   enum_value=enum_value, ext_value=ext_value), offset

    def __str__(self):
        return f"ByteProperty(name={self._name}, enum_type={self._enum_type}, value={self._enum_value})"


class BoolProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, value: bool):
        super().__init__(name, size, array_index)
        self._value = value

    @property
    def value(self) -> bool:
        return self._value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['BoolProperty', int]:
        # the flag byte is inline and not counted by the size field
        _expect_size(name, prop_size, 0, offset)
        raw, offset = _read_bytes(data, offset, 1, end)
        return cls(name=name, size=prop_size, array_index=array_index, value=raw[0] != 0), offset

    def __str__(self):
        return f"BoolProperty(name={self._name}, value={self._value})"


class ArrayProperty(Property):
    """Dynamic array. Elements stay undecoded: their type is not in the stream."""

    def __init__(self, name: str, size: int, array_index: int, count: int, data: bytes):
        super().__init__(name, size, array_index)
        self._count = count
        self._data = data

    @property
    def value(self) -> bytes:
        return self._data

    @property
    def count(self) -> int:
        return self._count

    @property
    def stride(self) -> int:
        return len(self._data) // self._count if self._count > 0 else 0

    def element(self, index: int) -> bytes:
        if not 0 <= index < self._count:
            raise IndexError(index)
        stride = self.stride
        return self._data[index * stride: (index + 1) * stride]

    def __len__(self) -> int:
        return self._count

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['ArrayProperty', int]:
        if prop_size < 4:
            raise PropertySizeMismatch(
                f"Array '{name}' declares size {prop_size}, too small for its count", offset)
        count, offset = _read_u32(data, offset, end)
        payload, offset = _read_bytes(data, offset, prop_size - 4, end)
        return cls(name=name, size=prop_size, array_index=array_index, count=count, data=payload), offset

    def __str__(self):
        return f"ArrayProperty(name={self._name}, count={self._count}, stride={self.stride})"


class FloatProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, value: float):
        super().__init__(name, size, array_index)
        self._value = value

    @property
    def value(self) -> float:
        return self._value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['FloatProperty', int]:
        _expect_size(name, prop_size, 4, offset)
        value, offset = _read_float(data, offset, end)
        return cls(name=name, size=prop_size, array_index=array_index, value=value), offset

    def __str__(self):
        return f"FloatProperty(name={self._name}, value={self._value})"


class StructProperty(Property):
    # struct types serialized natively instead of as a property list
    NATIVE_SIZES = {"Vector2D": 8, "Vector": 12}

    def __init__(self, name: str, size: int, array_index: int, type: str,
                 fields: Optional[List[Property]] = None, native_data: Optional[bytes] = None):
        super().__init__(name, size, array_index)
        self._type = type
        self._fields = fields if fields is not None else []
        self._native_data = native_data

    @property
    def value(self) -> Dict[str, Any]:
        if self._native_data is not None:
            return {"__type": self._type, "__raw": self._native_data}
        return {"__type": self._type, "__fields": self._fields}

    @property
    def type(self) -> str:
        return self._type

    @property
    def fields(self) -> List[Property]:
        return self._fields

    @property
    def native_data(self) -> Optional[bytes]:
        return self._native_data

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['StructProperty', int]:
        start = offset
        type, offset = _read_string(data, offset, end, log)
        inner, offset = _read_u32(data, offset, end)
        _check_reserved(inner, f"struct reserved field of '{name}'", start, log)

        native_size = cls.NATIVE_SIZES.get(type)
        if native_size is not None:
            _expect_size(name, prop_size, native_size, offset)
            raw, offset = _read_bytes(data, offset, native_size, end)
            return cls(name=name, size=prop_size, array_index=array_index, type=type,
                       native_data=raw), offset

        fields, offset = _read_properties(data, offset, prop_size, log, end)
        return cls(name=name, size=prop_size, array_index=array_index, type=type, fields=fields), offset

    def __str__(self):
        if self._native_data is not None:
            return f"StructProperty(name={self._name}, type={self._type}, raw={self._native_data.hex()})"
        return f"StructProperty(name={self._name}, type={self._type}, fields={len(self._fields)})"


class StrProperty(Property):
    def __init__(self, name: str, size: int, array_index: int, value: str):
        super().__init__(name, size, array_index)
        self._value = value

    @property
    def value(self) -> str:
        return self._value

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['StrProperty', int]:
        value, offset = _read_string(data, offset, end, log)
        return cls(name=name, size=prop_size, array_index=array_index, value=value), offset

    def __str__(self):
        return f"StrProperty(name={self._name}, value={self._value})"


class StaticArrayProperty(Property):
    """Consecutive same-named properties with indices 0..n-1, folded together."""

    synthetic = True

    def __init__(self, name: str, elements: Optional[List[Property]] = None):
        super().__init__(name, 0, 0)
        self._elements = list(elements) if elements else []

    @property
    def value(self) -> List[Any]:
        return [element.value for element in self._elements]

    @property
    def elements(self) -> List[Property]:
        return self._elements

    def add_property(self, prop: Property) -> None:
        self._elements.append(prop)

    def __getitem__(self, index: int) -> Property:
        return self._elements[index]

    def __len__(self) -> int:
        return len(self._elements)

    def __iter__(self):
        return iter(self._elements)

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger) -> Tuple['StaticArrayProperty', int]:
        raise TypeError("StaticArrayProperty is assembled from indexed properties, not read")

    def __str__(self):
        return f"StaticArrayProperty(name={self._name}, length={len(self._elements)})"


class UnknownProperty(Property):
    """A property whose type tag is not understood; its payload is kept verbatim."""

    synthetic = True

    def __init__(self, name: str, size: int, array_index: int, prop_type: str, raw: bytes):
        super().__init__(name, size, array_index)
        self._prop_type = prop_type
        self._raw = raw

    @property
    def value(self) -> bytes:
        return self._raw

    @property
    def type_name(self) -> str:
        return self._prop_type

    @classmethod
    def from_bytes(cls, name: str, prop_size: int, array_index: int, data: bytes, offset: int,
                   end: int, log: logging.Logger, prop_type: str = "") -> Tuple['UnknownProperty', int]:
        raw, offset = _read_bytes(data, offset, prop_size, end)
        return cls(name=name, size=prop_size, array_index=array_index, prop_type=prop_type, raw=raw), offset

    def __str__(self):
        return f"UnknownProperty(name={self._name}, type={self._prop_type}, value=<bytes len={len(self._raw)}>)"


class PropertyFactory:
    _TYPE_MAP: Dict[str, Type[Property]] = {}

    @classmethod
    def _build_type_map(cls):
        for subclass in Property.__subclasses__():
            if not subclass.synthetic:
                cls._TYPE_MAP[subclass.__name__] = subclass

    @classmethod
    def create_property(cls, name: str, prop_type: str, prop_size: int, array_index: int,
                        data: bytes, offset: int, end: int,
                        log: logging.Logger = LOGGER) -> Tuple[Property, int]:
        if not cls._TYPE_MAP:
            cls._build_type_map()
        prop_cls = cls._TYPE_MAP.get(prop_type)
        if prop_cls is None:
            _report(log, UnknownPropertyType,
                    f"unknown property type {prop_type} for '{name}', keeping {prop_size} raw byte(s)", offset)
            return UnknownProperty.from_bytes(name, prop_size, array_index, data, offset, end, log,
                                              prop_type=prop_type)
        return prop_cls.from_bytes(name, prop_size, array_index, data, offset, end, log)


@dataclass
class SaveHeader:
    version: int = 0
    uncompressed_size: int = 0
    game_number: int = 0
    save_number: int = 0
    save_description: str = ""
    time: str = ""
    map_command: str = ""
    tactical_save: bool = False
    ironman: bool = False
    auto_save: bool = False
    dlc_string: str = ""
    language: str = ""
    crc: int = 0


@dataclass
class ActorTableEntry:
    name: str
    instance_num: int


@dataclass
class Checkpoint:
    name: str
    instance_name: str
    vector: Tuple[float, float, float]
    rotator: Tuple[float, float, float]
    class_name: str
    properties: List[Property]
    pad_size: int
    template_index: int


@dataclass
class ActorTemplate:
    actor_class_path: str
    load_params: bytes
    archetype_path: str


@dataclass
class NameTableEntry:
    name: str
    zeros: bytes
    data: bytes


@dataclass
class CheckpointChunk:
    unknown_int1: int = 0
    unknown_string1: str = ""
    unknown_int2: int = 0
    checkpoint_table: List[Checkpoint] = field(default_factory=list)
    unknown_string2: str = ""
    actor_table: List[ActorTableEntry] = field(default_factory=list)
    unknown_int3: int = 0
    game_name: str = ""
    map_name: str = ""
    unknown_int4: int = 0


@dataclass
class SaveDocument:
    header: SaveHeader
    actor_table: List[ActorTableEntry]
    checkpoints: List[CheckpointChunk]


@dataclass
class DecodeOptions:
    compression: str = "lzo"
    body_offset: int = BODY_OFFSET
    # where to persist the decompressed body for debugging
    dump_path: Optional[Path] = None


def _read_header(data: bytes, offset: int = 0, end: Optional[int] = None,
                 log: logging.Logger = LOGGER) -> Tuple[SaveHeader, int]:
    header = SaveHeader()
    start = offset
    version, offset = _read_u32(data, offset, end)
    if version != SAVE_VERSION:
        raise FormatVersionMismatch(
            f"Data does not appear to be an XCOM save: expected file version {SAVE_VERSION} but got {version}", start)
    header.version = version
    header.uncompressed_size, offset = _read_u32(data, offset, end)
    header.game_number, offset = _read_u32(data, offset, end)
    header.save_number, offset = _read_u32(data, offset, end)
    header.save_description, offset = _read_string(data, offset, end, log)
    header.time, offset = _read_string(data, offset, end, log)
    header.map_command, offset = _read_string(data, offset, end, log)
    header.tactical_save, offset = _read_bool(data, offset, end)
    header.ironman, offset = _read_bool(data, offset, end)
    header.auto_save, offset = _read_bool(data, offset, end)
    header.dlc_string, offset = _read_string(data, offset, end, log)
    header.language, offset = _read_string(data, offset, end, log)
    header.crc, offset = _read_u32(data, offset, end)
    return header, offset


def _read_actor_table(data: bytes, offset: int, log: logging.Logger = LOGGER) -> Tuple[List[ActorTableEntry], int]:
    actor_count, offset = _read_u32(data, offset)
    actors: List[ActorTableEntry] = []
    for _ in range(actor_count):
        name, offset = _read_string(data, offset, log=log)
        instance_num, offset = _read_u32(data, offset)
        actors.append(ActorTableEntry(name, instance_num))
    return actors, offset


def _read_checkpoint(data: bytes, offset: int, log: logging.Logger = LOGGER) -> Tuple[Checkpoint, int]:
    name, offset = _read_string(data, offset, log=log)
    instance_name, offset = _read_string(data, offset, log=log)
    vector = []
    for _ in range(3):
        v, offset = _read_float(data, offset)
        vector.append(v)
    rotator = []
    for _ in range(3):
        v, offset = _read_float(data, offset)
        rotator.append(v)
    class_name, offset = _read_string(data, offset, log=log)

    prop_len, offset = _read_u32(data, offset)
    start = offset
    properties, offset = _read_properties(data, offset, prop_len, log)

    # whatever the property list leaves of its declared length is zero padding
    pad_size = prop_len - (offset - start)
    if pad_size > 0:
        padding, offset = _read_bytes(data, offset, pad_size)
        nonzero = next((i for i, b in enumerate(padding) if b != 0), None)
        if nonzero is not None:
            log.warning("Found non-zero padding byte in checkpoint '%s' at offset 0x%x",
                        name, offset - pad_size + nonzero)

    template_index, offset = _read_u32(data, offset)
    return Checkpoint(name=name, instance_name=instance_name, vector=tuple(vector), rotator=tuple(rotator),
                      class_name=class_name, properties=properties, pad_size=pad_size,
                      template_index=template_index), offset


def _read_checkpoint_table(data: bytes, offset: int, log: logging.Logger = LOGGER) -> Tuple[List[Checkpoint], int]:
    checkpoint_count, offset = _read_u32(data, offset)
    checkpoints: List[Checkpoint] = []
    for _ in range(checkpoint_count):
        checkpoint, offset = _read_checkpoint(data, offset, log)
        checkpoints.append(checkpoint)
    return checkpoints, offset


def _read_actor_template_table(data: bytes, offset: int,
                               log: logging.Logger = LOGGER) -> Tuple[List[ActorTemplate], int]:
    template_count, offset = _read_u32(data, offset)
    templates: List[ActorTemplate] = []
    for _ in range(template_count):
        actor_class_path, offset = _read_string(data, offset, log=log)
        load_params, offset = _read_bytes(data, offset, TEMPLATE_PARAMS_SIZE)
        archetype_path, offset = _read_string(data, offset, log=log)
        templates.append(ActorTemplate(actor_class_path, load_params, archetype_path))
    return templates, offset


def _read_name_table(data: bytes, offset: int, log: logging.Logger = LOGGER) -> Tuple[List[NameTableEntry], int]:
    # only seen in tactical saves
    name_count, offset = _read_u32(data, offset)
    names: List[NameTableEntry] = []
    for _ in range(name_count):
        name, offset = _read_string(data, offset, log=log)
        guard_offset = offset
        zeros, offset = _read_bytes(data, offset, NAME_GUARD_SIZE)
        if any(zeros):
            raise UnexpectedNonZeroReservedField(
                f"Expected all zeros in name table entry '{name}'", guard_offset)
        data_len, offset = _read_u32(data, offset)
        blob, offset = _read_bytes(data, offset, data_len)
        names.append(NameTableEntry(name, zeros, blob))
    return names, offset


def _read_checkpoint_chunk(data: bytes, offset: int, log: logging.Logger = LOGGER) -> Tuple[CheckpointChunk, int]:
    chunk = CheckpointChunk()
    chunk.unknown_int1, offset = _read_u32(data, offset)
    chunk.unknown_string1, offset = _read_string(data, offset, log=log)

    sentinel_offset = offset
    none, offset = _read_string(data, offset, log=log)
    if none != SENTINEL:
        raise MissingSentinel(f"Expected 'None' after actor table but found {none!r}", sentinel_offset)

    chunk.unknown_int2, offset = _read_u32(data, offset)
    chunk.checkpoint_table, offset = _read_checkpoint_table(data, offset, log)
    log.debug("Finished reading checkpoint table at offset 0x%x", offset)

    name_table_offset = offset
    name_table_len, offset = _read_u32(data, offset)
    if name_table_len != 0:
        raise UnexpectedNonEmptyTable(f"Name table length is {name_table_len}, expected 0", name_table_offset)

    chunk.unknown_string2, offset = _read_string(data, offset, log=log)
    chunk.actor_table, offset = _read_actor_table(data, offset, log)
    log.debug("Finished reading second actor table at offset 0x%x", offset)

    chunk.unknown_int3, offset = _read_u32(data, offset)

    template_offset = offset
    templates, offset = _read_actor_template_table(data, offset, log)
    if templates:
        raise UnexpectedNonEmptyTable(
            f"Actor template table has {len(templates)} entries, expected none", template_offset)
    log.debug("Finished reading actor template table at offset 0x%x", offset)

    chunk.game_name, offset = _read_string(data, offset, log=log)
    chunk.map_name, offset = _read_string(data, offset, log=log)
    chunk.unknown_int4, offset = _read_u32(data, offset)
    return chunk, offset


def _decompress_lzo(payload: bytes, size: int) -> bytes:
    if lzo is None:
        raise DecompressionFailure("lzo not available. Install 'python-lzo' package.")
    return lzo.decompress(payload, False, size)


def _decompress_lz4(payload: bytes, size: int) -> bytes:
    if lz4b is None:
        raise DecompressionFailure("lz4 not available. Install 'lz4' package.")
    return lz4b.decompress(payload, uncompressed_size=size)


def _decompress_zstd(payload: bytes, size: int) -> bytes:
    if zstd is None:
        raise DecompressionFailure("zstd not available. Install 'zstandard' package.")
    return zstd.ZstdDecompressor().decompress(payload, max_output_size=size)


def _decompress_zlib(payload: bytes, size: int) -> bytes:
    return zlib.decompress(payload)


DECOMPRESSORS: Dict[str, Callable[[bytes, int], bytes]] = {
    "lzo": _decompress_lzo,
    "lz4": _decompress_lz4,
    "zstd": _decompress_zstd,
    "zlib": _decompress_zlib,
}


def _iter_chunks(data: bytes, start: int = BODY_OFFSET) -> Iterator[Tuple[int, int, int]]:
    """Yield ``(offset, compressed_size, uncompressed_size)`` for every chunk of the body."""
    offset = start
    while True:
        magic, _ = _read_u32(data, offset)
        if magic != CHUNK_MAGIC:
            raise ChunkMagicMismatch(
                f"Failed to find compressed chunk: magic 0x{magic:08x}", offset)
        _ensure(data, offset, CHUNK_HEADER_SIZE, None)
        compressed_size, _ = _read_u32(data, offset + 8)
        uncompressed_size, _ = _read_u32(data, offset + 12)
        _ensure(data, offset + CHUNK_HEADER_SIZE, compressed_size, None)

        yield offset, compressed_size, uncompressed_size

        offset += CHUNK_HEADER_SIZE + compressed_size
        if offset >= len(data):
            break


def get_uncompressed_size(data: bytes, start: int = BODY_OFFSET) -> int:
    return sum(uncompressed_size for _, _, uncompressed_size in _iter_chunks(data, start))


def get_uncompressed_data(data: bytes, total_size: int, start: int = BODY_OFFSET, method: str = "lzo") -> bytes:
    """Decompress every chunk of the body into one buffer of ``total_size`` bytes."""
    decompress = DECOMPRESSORS.get(method.lower())
    if decompress is None:
        raise DecompressionFailure(
            f"Unknown compression method {method!r}. Choose one of: {', '.join(DECOMPRESSORS)}")

    out = bytearray(total_size)
    out_offset = 0
    for offset, compressed_size, uncompressed_size in _iter_chunks(data, start):
        payload_offset = offset + CHUNK_HEADER_SIZE
        payload = bytes(data[payload_offset: payload_offset + compressed_size])
        try:
            chunk = decompress(payload, uncompressed_size)
        except DecompressionFailure:
            raise
        except Exception as e:
            raise DecompressionFailure(f"{method} decompression of save data failed: {e}", offset) from e

        if len(chunk) != uncompressed_size or out_offset + uncompressed_size > total_size:
            raise DecompressedSizeMismatch(
                f"Chunk decompressed to {len(chunk)} byte(s), expected {uncompressed_size}", offset)

        out[out_offset: out_offset + uncompressed_size] = chunk
        out_offset += uncompressed_size

    return bytes(out)


def decode_save(raw: bytes, options: Optional[DecodeOptions] = None,
                log: Optional[logging.Logger] = None) -> SaveDocument:
    """Decode a complete save file held in memory."""
    options = options or DecodeOptions()
    log = log or LOGGER

    header, _ = _read_header(raw, 0, options.body_offset, log)

    total_size = get_uncompressed_size(raw, options.body_offset)
    data = get_uncompressed_data(raw, total_size, options.body_offset, options.compression)
    log.debug("Decompressed %d byte(s) of save data", len(data))
    if options.dump_path is not None:
        Path(options.dump_path).write_bytes(data)

    # from here on only the decompressed body is read
    actor_table, offset = _read_actor_table(data, 0, log)
    log.debug("Finished reading actor table at offset 0x%x", offset)

    checkpoints: List[CheckpointChunk] = []
    while offset < len(data):
        chunk, offset = _read_checkpoint_chunk(data, offset, log)
        checkpoints.append(chunk)

    return SaveDocument(header=header, actor_table=actor_table, checkpoints=checkpoints)


def read_savefile(path: Path, options: Optional[DecodeOptions] = None,
                  log: Optional[logging.Logger] = None) -> SaveDocument:
    return decode_save(Path(path).read_bytes(), options, log)


def _preview(raw: bytes, limit: int = 32) -> str:
    n = len(raw)
    preview = raw[:limit].hex(" ")
    more = f" +{n - limit}b" if n > limit else ""
    return f"{n} bytes: {preview}{more}" if n else "0 bytes"


def _json_float(value: float) -> Union[float, str]:
    # JSON has no NaN or infinity tokens
    if math.isfinite(value):
        return value
    return str(value)


def create_node(prop: Property) -> Dict[str, Any]:
    """Build a JSON-friendly tree node for one property."""
    meta = ""
    value: Any = None
    children: List[Dict[str, Any]] = []

    if isinstance(prop, StructProperty):
        if prop.native_data is not None:
            meta = prop.type
            value = _preview(prop.native_data)
        else:
            meta = f"{prop.type}, {len(prop.fields)} field(s)"
            children = [create_node(f) for f in prop.fields]
    elif isinstance(prop, StaticArrayProperty):
        meta = f"static array x {len(prop)}"
        children = [create_node(element) for element in prop]
    elif isinstance(prop, ArrayProperty):
        meta = f"{prop.count} element(s), stride {prop.stride}"
        value = _preview(prop.value)
    elif isinstance(prop, ByteProperty):
        meta = prop.enum_type
        value = prop.value
    elif isinstance(prop.value, (bytes, bytearray)):
        value = _preview(prop.value)
    elif isinstance(prop, FloatProperty):
        value = _json_float(prop.value)
    else:
        value = prop.value

    return {
        "name": prop.name,
        "type": prop.type_name,
        "meta": meta,
        "children": children if children else None,
        "value": value,
    }


def document_tree(save: SaveDocument) -> Dict[str, Any]:
    """Render a decoded save as nested dicts and lists, ready for ``json.dumps``."""
    def actors(table: List[ActorTableEntry]) -> List[Dict[str, Any]]:
        return [{"name": a.name, "instance_num": a.instance_num} for a in table]

    chunks = []
    for chunk in save.checkpoints:
        chunks.append({
            "unknown_int1": chunk.unknown_int1,
            "unknown_string1": chunk.unknown_string1,
            "unknown_int2": chunk.unknown_int2,
            "checkpoints": [{
                "name": c.name,
                "instance_name": c.instance_name,
                "vector": [_json_float(v) for v in c.vector],
                "rotator": [_json_float(v) for v in c.rotator],
                "class_name": c.class_name,
                "pad_size": c.pad_size,
                "template_index": c.template_index,
                "properties": [create_node(p) for p in c.properties],
            } for c in chunk.checkpoint_table],
            "unknown_string2": chunk.unknown_string2,
            "actor_table": actors(chunk.actor_table),
            "unknown_int3": chunk.unknown_int3,
            "game_name": chunk.game_name,
            "map_name": chunk.map_name,
            "unknown_int4": chunk.unknown_int4,
        })

    return {
        "header": vars(save.header).copy(),
        "actor_table": actors(save.actor_table),
        "checkpoints": chunks,
    }
