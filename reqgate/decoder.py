# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Structural decoder: field map -> fresh schema instance.

Maps the canonical field map produced by the source normalizers onto a
pydantic model, coercing strings to the declared field types. Constraints
(required, ranges, formats, custom rules) are NOT checked here; that is the
rule engine's job. The decoder only answers "does the input have the right
shape and types?".

Field keys:
  - the field's alias when set, otherwise its name (AliasChoices: any
    string choice, the first one present wins)
  - nested models:       "<key>.<sub_key>"
  - lists of models:     "<key>.<index>.<sub_key>"

Value selection:
  - scalar fields take the last value of the key (later values win)
  - sequence fields take every value, in order
  - an empty string for a non-string scalar counts as absent

Only structural scalar types (str, int, float, bool, Decimal, bytes) and
sequences of them are coerced. Everything else (EmailStr, enums, dates,
literals, unions) is passed through as the raw string and converted by the
rule engine, so format errors are reported as validation failures.
"""

import collections.abc
import types
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type, Union, get_args, get_origin

from loguru import logger
from pydantic import AliasChoices, BaseModel, TypeAdapter, ValidationError
from pydantic.fields import FieldInfo

from reqgate.config import IGNORE_UNKNOWN_KEYS, KEY_SEPARATOR
from reqgate.errors import ConfigurationError, DecodeFailure, format_pydantic_errors
from reqgate.sources import FieldMap, Source

_SCALAR_TYPES = (str, int, float, bool, Decimal, bytes)

_SEQUENCE_ORIGINS = (
    list,
    set,
    frozenset,
    tuple,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
)

_UNION_ORIGINS: Tuple[Any, ...] = (Union, getattr(types, "UnionType", Union))

# Marker for "field not present in the input"
_MISSING = object()

# TypeAdapter construction is expensive; adapters are cached per annotation.
_ADAPTERS: Dict[Any, TypeAdapter] = {}


def field_keys(name: str, field: FieldInfo) -> List[str]:
    """
    Returns every input key a model field may be read from, preferred key first.

    Args:
        name: Attribute name of the field
        field: pydantic field info

    Returns:
        The string validation alias, or the string choices of an AliasChoices,
        else the alias, else the name

    Raises:
        ConfigurationError: The validation alias is an AliasPath (or choices
            made only of paths); flat field maps cannot address those
    """
    alias = field.validation_alias
    if isinstance(alias, str):
        return [alias]
    if isinstance(alias, AliasChoices):
        keys = [choice for choice in alias.choices if isinstance(choice, str)]
        if keys:
            return keys
    if alias is not None:
        raise ConfigurationError(
            f"field '{name}' uses a path validation alias ({alias!r}); "
            "only string aliases and AliasChoices of strings are supported"
        )
    return [field.alias or name]


def field_key(name: str, field: FieldInfo) -> str:
    """Returns the preferred input key of a model field. See field_keys()."""
    return field_keys(name, field)[0]


def _strip_annotated(annotation: Any) -> Any:
    while get_origin(annotation) is Annotated:
        annotation = get_args(annotation)[0]
    return annotation


def _unwrap_optional(annotation: Any) -> Any:
    """Optional[X] -> X. Other unions are returned unchanged."""
    annotation = _strip_annotated(annotation)
    if get_origin(annotation) in _UNION_ORIGINS:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return _strip_annotated(args[0])
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _is_scalar(annotation: Any) -> bool:
    return _unwrap_optional(annotation) in _SCALAR_TYPES


def _sequence_item(annotation: Any) -> Optional[Any]:
    """Item type of a sequence annotation, or None when it is not a sequence."""
    if annotation in (list, set, frozenset, tuple):
        return str
    if get_origin(annotation) not in _SEQUENCE_ORIGINS:
        return None
    args = get_args(annotation)
    return _unwrap_optional(args[0]) if args else str


def _bare_sequence(annotation: Any) -> Any:
    """Sequence annotation with Annotated constraints removed from its item types."""
    origin = get_origin(annotation)
    args = get_args(annotation)
    if origin is None or not args:
        return annotation
    return origin[tuple(_strip_annotated(arg) for arg in args)]


def check_schema(model: Type[BaseModel], _seen: Optional[set] = None) -> None:
    """
    Verifies every field of a schema (nested models included) has usable input keys.

    Raises:
        ConfigurationError: A field uses an alias the decoder cannot address
    """
    seen = _seen if _seen is not None else set()
    if model in seen:
        return
    seen.add(model)

    for name, field in model.model_fields.items():
        field_keys(name, field)
        annotation = _unwrap_optional(field.annotation)
        if _is_model(annotation):
            check_schema(annotation, seen)
            continue
        item = _sequence_item(annotation)
        if item is not None and _is_model(item):
            check_schema(item, seen)


def _adapter(annotation: Any) -> TypeAdapter:
    try:
        adapter = _ADAPTERS.get(annotation)
    except TypeError:
        # Unhashable metadata inside the annotation
        return TypeAdapter(annotation)
    if adapter is None:
        adapter = TypeAdapter(annotation)
        _ADAPTERS[annotation] = adapter
    return adapter


def _has_prefix(data: FieldMap, prefix: str) -> bool:
    return any(key.startswith(prefix) for key in data)


def _present_key(keys: List[str], data: FieldMap) -> str:
    """First key with data under it (as is or as a dotted prefix); else the preferred key."""
    for key in keys:
        if key in data or _has_prefix(data, f"{key}{KEY_SEPARATOR}"):
            return key
    return keys[0]


def _indexes(data: FieldMap, prefix: str) -> List[int]:
    """Sorted list indexes found under "<prefix><index>.<...>" keys."""
    found = set()
    for key in data:
        if not key.startswith(prefix):
            continue
        head = key[len(prefix) :].split(KEY_SEPARATOR, 1)[0]
        if head.isdigit():
            found.add(int(head))
    return sorted(found)


def _resolves(model: Type[BaseModel], parts: List[str]) -> bool:
    """Whether a dotted key path points at a field of the model."""
    fields = {
        key: field
        for name, field in model.model_fields.items()
        for key in field_keys(name, field)
    }
    field = fields.get(parts[0])
    if field is None:
        return False

    annotation = _unwrap_optional(field.annotation)
    rest = parts[1:]
    if _is_model(annotation):
        return bool(rest) and _resolves(annotation, rest)

    item = _sequence_item(annotation)
    if item is not None and _is_model(item):
        if rest and rest[0].isdigit():
            rest = rest[1:]
        return bool(rest) and _resolves(item, rest)

    return not rest


class StructuralDecoder:
    """
    Decodes field maps into pydantic model instances.

    Every call builds a new instance with model_construct(); nothing is
    cached between requests except per-type coercion adapters.

    Attributes:
        ignore_unknown_keys: When False, keys that match no schema field are a decode failure

    Example:
        >>> class Query(BaseModel):
        ...     page: int = 1
        ...     tags: List[str] = []
        >>> decoder = StructuralDecoder()
        >>> decoder.decode(Query, {"page": ["2"], "tags": ["a", "b"]})
        Query(page=2, tags=['a', 'b'])
    """

    def __init__(self, ignore_unknown_keys: bool = IGNORE_UNKNOWN_KEYS):
        self.ignore_unknown_keys = ignore_unknown_keys

    def decode(
        self,
        schema: Type[BaseModel],
        data: FieldMap,
        source: Optional[Source] = None,
    ) -> BaseModel:
        """
        Builds a schema instance from a field map.

        Args:
            schema: pydantic model class
            data: Canonical field map
            source: Source reported in failures

        Returns:
            New, not yet validated, schema instance. Fields absent from the
            input are left unset (defaults apply where declared).

        Raises:
            DecodeFailure: A value cannot be coerced to its declared type, or
                an unknown key was found in strict mode
        """
        if not self.ignore_unknown_keys:
            unknown = sorted(
                key for key in data if not _resolves(schema, key.split(KEY_SEPARATOR))
            )
            if unknown:
                raise DecodeFailure(
                    f"unknown field(s): {', '.join(unknown)}",
                    source=source,
                    errors=[
                        {"loc": key, "msg": "Unknown field", "type": "unknown_field"}
                        for key in unknown
                    ],
                )

        instance = self._build(schema, data, "", source)
        logger.debug(
            "[Decoder] Decoded {} (fields set: {})",
            schema.__name__,
            sorted(instance.model_fields_set),
        )
        return instance

    def _build(
        self,
        model: Type[BaseModel],
        data: FieldMap,
        prefix: str,
        source: Optional[Source],
    ) -> BaseModel:
        values: Dict[str, Any] = {}
        for name, field in model.model_fields.items():
            keys = [f"{prefix}{key}" for key in field_keys(name, field)]
            key = _present_key(keys, data)
            value = self._decode_field(field.annotation, key, data, source)
            if value is not _MISSING:
                values[name] = value
        return model.model_construct(**values)

    def _decode_field(
        self,
        annotation: Any,
        key: str,
        data: FieldMap,
        source: Optional[Source],
    ) -> Any:
        annotation = _unwrap_optional(annotation)

        if _is_model(annotation):
            nested_prefix = f"{key}{KEY_SEPARATOR}"
            if not _has_prefix(data, nested_prefix):
                return _MISSING
            return self._build(annotation, data, nested_prefix, source)

        item = _sequence_item(annotation)
        if item is not None:
            return self._decode_sequence(annotation, item, key, data, source)

        values = data.get(key)
        if not values:
            return _MISSING

        raw = values[-1]
        if raw == "" and annotation is not str:
            return _MISSING
        if not _is_scalar(annotation):
            return raw
        return self._coerce(annotation, key, raw, source)

    def _decode_sequence(
        self,
        annotation: Any,
        item: Any,
        key: str,
        data: FieldMap,
        source: Optional[Source],
    ) -> Any:
        if _is_model(item):
            nested_prefix = f"{key}{KEY_SEPARATOR}"
            indexes = _indexes(data, nested_prefix)
            if indexes:
                return [
                    self._build(item, data, f"{nested_prefix}{index}{KEY_SEPARATOR}", source)
                    for index in indexes
                ]
            # A single nested occurrence (e.g. one XML element) is not indexed
            if _has_prefix(data, nested_prefix):
                return [self._build(item, data, nested_prefix, source)]
            return _MISSING

        if key not in data:
            return _MISSING

        values = data[key]
        if item is not str:
            values = [value for value in values if value != ""]
        if not _is_scalar(item):
            return list(values)
        # Item constraints (e.g. List[Annotated[int, Field(gt=0)]]) belong to validation
        return self._coerce(_bare_sequence(annotation), key, values, source)

    def _coerce(
        self,
        annotation: Any,
        key: str,
        raw: Any,
        source: Optional[Source],
    ) -> Any:
        try:
            return _adapter(annotation).validate_python(raw)
        except ValidationError as e:
            description, errors = format_pydantic_errors(e, prefix=key)
            raise DecodeFailure(description, source=source, errors=errors) from e
