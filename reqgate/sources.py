# -*- coding: utf-8 -*-

# Request Gate
# Copyright (C) 2025 Request Gate contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Source normalizers.

Every supported input source is reduced to one canonical representation,
the field map (field key -> ordered list of string values), before structural
decoding. This lets a single set of schema field keys serve all sources.

Sources:
  - PARAMS: route parameters matched by the router (one value per key)
  - QUERY:  URL query string (repeated keys keep every value, in order)
  - FORM:   application/x-www-form-urlencoded body (same rules as QUERY)
  - JSON:   JSON object body, flattened to dotted keys
  - XML:    XML body, children of the root element flattened to dotted keys

Flattening convention for JSON and XML:
  - nested objects/elements use dotted keys:   profile.email
  - arrays of scalars keep all items in order: follow_ids -> ["1", "2"]
  - arrays of objects are indexed:             items.0.name, items.1.name
  - booleans become "true"/"false", JSON null is treated as absent

XML elements collect every occurrence from the first one on, so a single
<tag> and repeated <tag> siblings take the same path and none is dropped.
"""

import json
import re
import xml.etree.ElementTree as ET
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union
from urllib.parse import parse_qsl

from fastapi import Request
from loguru import logger
from starlette.requests import ClientDisconnect

from reqgate.config import KEY_SEPARATOR
from reqgate.errors import ConfigurationError, DecodeFailure

FieldMap = Dict[str, List[str]]

# A percent sign not followed by two hex digits
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class Source(str, Enum):
    """Where the data for a validated schema is read from."""

    PARAMS = "params"
    QUERY = "query"
    FORM = "form"
    JSON = "json"
    XML = "xml"


# ==================================================================================================
# URL-encoded data (query string, form body)
# ==================================================================================================


def parse_urlencoded(raw: str, source: Source = Source.QUERY) -> FieldMap:
    """
    Parses URL-encoded data into a field map.

    Args:
        raw: Raw "a=1&b=2&a=3" text, without the leading "?"
        source: Source reported in failures

    Returns:
        Field map with every value of a repeated key, in appearance order.
        Keys without "=" get an empty string value.

    Raises:
        DecodeFailure: Malformed percent escape or escape that is not valid UTF-8

    Example:
        >>> parse_urlencoded("tag=a&tag=b&page=2")
        {'tag': ['a', 'b'], 'page': ['2']}
    """
    match = _BAD_ESCAPE_RE.search(raw)
    if match:
        snippet = raw[match.start() : match.start() + 3]
        raise DecodeFailure(
            f"invalid URL escape {snippet!r} in {source.value} data", source=source
        )

    try:
        pairs = parse_qsl(raw, keep_blank_values=True, errors="strict")
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeFailure(
            f"malformed {source.value} data: {e}", source=source
        ) from e

    result: FieldMap = {}
    for key, value in pairs:
        result.setdefault(key, []).append(value)
    return result


# ==================================================================================================
# JSON flattening
# ==================================================================================================


def _stringify(value: Any) -> str:
    """Render a JSON leaf the way it was written in the document."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _flatten_value(value: Any, path: str, result: FieldMap) -> None:
    if value is None:
        return

    if isinstance(value, dict):
        for key, item in value.items():
            _flatten_value(item, f"{path}{KEY_SEPARATOR}{key}", result)
        return

    if isinstance(value, list):
        if any(isinstance(item, dict) for item in value):
            for index, item in enumerate(value):
                _flatten_value(item, f"{path}{KEY_SEPARATOR}{index}", result)
        else:
            result[path] = [_stringify(item) for item in value if item is not None]
        return

    result.setdefault(path, []).append(_stringify(value))


def flatten_json(document: Dict[str, Any]) -> FieldMap:
    """
    Flattens a decoded JSON object into a field map.

    Args:
        document: Top-level JSON object

    Returns:
        Field map using the dotted-key convention described in the module docstring

    Example:
        >>> flatten_json({"id": 1, "profile": {"email": "a@b.c"}, "tags": ["x", "y"]})
        {'id': ['1'], 'profile.email': ['a@b.c'], 'tags': ['x', 'y']}
    """
    result: FieldMap = {}
    for key, value in document.items():
        _flatten_value(value, str(key), result)
    return result


# ==================================================================================================
# XML flattening
# ==================================================================================================

XmlTree = Dict[str, List[Union[str, "XmlTree"]]]


def _local_name(tag: str) -> str:
    """Strip the "{namespace}" prefix ElementTree puts on qualified names."""
    return tag.rsplit("}", 1)[-1]


def _collect_children(element: ET.Element) -> XmlTree:
    """Group child elements by name; each name keeps all occurrences in order."""
    children: XmlTree = {}
    for child in element:
        if not isinstance(child.tag, str):
            continue
        if len(child):
            occurrence: Union[str, XmlTree] = _collect_children(child)
        else:
            occurrence = (child.text or "").strip()
        children.setdefault(_local_name(child.tag), []).append(occurrence)
    return children


def _flatten_tree(tree: XmlTree, prefix: str, result: FieldMap) -> None:
    for name, occurrences in tree.items():
        path = f"{prefix}{name}"

        if all(isinstance(item, str) for item in occurrences):
            result.setdefault(path, []).extend(occurrences)
        elif len(occurrences) == 1:
            _flatten_tree(occurrences[0], f"{path}{KEY_SEPARATOR}", result)
        else:
            for index, item in enumerate(occurrences):
                indexed = f"{path}{KEY_SEPARATOR}{index}"
                if isinstance(item, str):
                    result.setdefault(indexed, []).append(item)
                else:
                    _flatten_tree(item, f"{indexed}{KEY_SEPARATOR}", result)


def flatten_xml(root: ET.Element) -> FieldMap:
    """
    Flattens the children of an XML root element into a field map.

    The root element itself is only a wrapper and does not contribute a key.
    Attributes are ignored; leaf text is whitespace-trimmed.

    Example:
        >>> flatten_xml(ET.fromstring("<r><id>1</id><tag>a</tag><tag>b</tag></r>"))
        {'id': ['1'], 'tag': ['a', 'b']}
    """
    result: FieldMap = {}
    _flatten_tree(_collect_children(root), "", result)
    return result


# ==================================================================================================
# Per-source normalizers
# ==================================================================================================


async def _read_body(request: Request, source: Source) -> bytes:
    try:
        return await request.body()
    except ClientDisconnect as e:
        raise DecodeFailure(
            f"unable to read {source.value} body: client disconnected", source=source
        ) from e


async def normalize_params(request: Request) -> FieldMap:
    """Route parameters: each matched segment becomes a one-element list."""
    return {key: [str(value)] for key, value in request.path_params.items()}


async def normalize_query(request: Request) -> FieldMap:
    raw = request.scope.get("query_string", b"").decode("latin-1")
    return parse_urlencoded(raw, Source.QUERY)


async def normalize_form(request: Request) -> FieldMap:
    """
    URL-encoded form body.

    Bodies with another content type (e.g. multipart/form-data) produce an
    empty field map, so required fields are reported by validation.
    """
    content_type = request.headers.get("content-type", "")
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type and media_type != _FORM_CONTENT_TYPE:
        logger.debug(
            "[Sources] Form body skipped for content type '{}'", media_type
        )
        return {}

    body = await _read_body(request, Source.FORM)
    try:
        raw = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeFailure("form body is not valid UTF-8", source=Source.FORM) from e
    return parse_urlencoded(raw, Source.FORM)


async def normalize_json(request: Request) -> FieldMap:
    body = await _read_body(request, Source.JSON)
    try:
        document = json.loads(body)
    except ValueError as e:
        raise DecodeFailure(f"malformed JSON body: {e}", source=Source.JSON) from e

    if not isinstance(document, dict):
        raise DecodeFailure(
            f"JSON body must be an object, got {type(document).__name__}",
            source=Source.JSON,
        )
    return flatten_json(document)


async def normalize_xml(request: Request) -> FieldMap:
    body = await _read_body(request, Source.XML)
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise DecodeFailure(f"malformed XML body: {e}", source=Source.XML) from e
    return flatten_xml(root)


Normalizer = Callable[[Request], Awaitable[FieldMap]]

_NORMALIZERS: Dict[Source, Normalizer] = {
    Source.PARAMS: normalize_params,
    Source.QUERY: normalize_query,
    Source.FORM: normalize_form,
    Source.JSON: normalize_json,
    Source.XML: normalize_xml,
}


def resolve_normalizer(source: Source) -> Normalizer:
    """
    Returns the normalizer for a source.

    Raises:
        ConfigurationError: source is not a Source member. Passing a wrong
            value at registration time is a wiring bug, never a client error.
    """
    if not isinstance(source, Source) or source not in _NORMALIZERS:
        logger.error("[Sources] Unknown source: {!r}", source)
        raise ConfigurationError(f"unknown source: {source!r}")
    return _NORMALIZERS[source]


async def normalize(source: Source, request: Request) -> FieldMap:
    """
    Reads the request data for a source as a field map.

    Args:
        source: Source to read
        request: Incoming request

    Returns:
        Canonical field map

    Raises:
        ConfigurationError: Unknown source
        DecodeFailure: Malformed input
    """
    normalizer = resolve_normalizer(source)
    field_map = await normalizer(request)
    logger.debug(
        "[Sources] Normalized {} data: {} key(s)", source.value, len(field_map)
    )
    return field_map
