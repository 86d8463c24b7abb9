"""
Conversion of Postman v2.x collections into OpenAPI 3.0 documents.

The conversion pipeline treats the transform as a black box behind the
:class:`Transform` protocol: bytes of a collection in, bytes of an API
description out, :class:`~postman_openapi_sync.errors.TransformError` on
failure. :class:`PostmanToOpenAPI` is the built-in implementation; tests and
deployments may inject any other object with a matching ``convert`` method.

Mapping rules:
- ``info.name`` / ``info.description`` become the OpenAPI ``info`` block
- folders become tags; requests outside any folder use the default tag
- ``:id`` and unresolved ``{{id}}`` path segments become ``{id}`` parameters
- enabled query entries and headers become parameters
- raw JSON, urlencoded and form-data bodies become ``requestBody`` schemas
  inferred from the example payload
- saved example responses become ``responses``; otherwise a bare ``200``
- collection level bearer / basic / apikey auth becomes a security scheme
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import yaml

from .errors import TransformError

logger = logging.getLogger(__name__)

OPENAPI_VERSION = "3.0.0"
VARIABLE_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
SKIPPED_HEADERS = {"content-type", "accept", "authorization"}
HTTP_METHODS = {"get", "put", "post", "delete", "options", "head", "patch", "trace"}


class Transform(Protocol):
    def convert(self, source: bytes) -> bytes:
        """Convert a serialized collection into a serialized API description."""
        ...


def infer_schema(value: Any) -> Dict[str, Any]:
    """Derive a JSON schema fragment from an example value."""
    if isinstance(value, bool):
        return {"type": "boolean"}
    if isinstance(value, int):
        return {"type": "integer"}
    if isinstance(value, float):
        return {"type": "number"}
    if isinstance(value, str):
        return {"type": "string"}
    if isinstance(value, list):
        return {"type": "array", "items": infer_schema(value[0]) if value else {}}
    if isinstance(value, dict):
        return {"type": "object", "properties": {key: infer_schema(item) for key, item in value.items()}}
    return {"nullable": True}


def infer_scalar_schema(raw: Any) -> Dict[str, Any]:
    """Guess the type of a value taken from a URL or form field.

    Postman stores these as strings, but hand-edited collections may hold
    numbers or booleans, which are read through their string form.
    """
    if raw is None or raw == "":
        return {"type": "string"}
    if not isinstance(raw, str):
        raw = str(raw)
    if raw.lower() in {"true", "false"}:
        return {"type": "boolean"}
    if re.fullmatch(r"-?\d+", raw):
        return {"type": "integer"}
    if re.fullmatch(r"-?\d+\.\d+", raw):
        return {"type": "number"}
    return {"type": "string"}


def _text(value: Any) -> Optional[str]:
    """Postman descriptions are either plain strings or ``{"content": ...}`` objects."""
    if isinstance(value, dict):
        value = value.get("content")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _coerce_example(raw: Any) -> Any:
    schema = infer_scalar_schema(raw)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raw = str(raw)
    if schema["type"] == "boolean":
        return raw.lower() == "true"
    if schema["type"] == "integer":
        return int(raw)
    if schema["type"] == "number":
        return float(raw)
    return raw


class PostmanToOpenAPI:
    """
    Built-in Postman collection converter.

    Args:
        default_tag: Tag for requests that are not inside a folder
        output_format: ``json`` (default) or ``yaml``
    """

    def __init__(self, default_tag: str = "General", output_format: str = "json") -> None:
        self.default_tag = default_tag
        self.output_format = output_format.lower()

    def convert(self, source: bytes) -> bytes:
        try:
            collection = json.loads(source)
        except (UnicodeDecodeError, ValueError) as exc:
            raise TransformError(f"Collection is not valid JSON: {exc}") from exc
        if not isinstance(collection, dict):
            raise TransformError("Collection must be a JSON object")

        document = self.build_document(collection)
        if self.output_format == "yaml":
            return yaml.safe_dump(document, sort_keys=False, allow_unicode=True).encode("utf-8")
        return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")

    def build_document(self, collection: Dict[str, Any]) -> Dict[str, Any]:
        info = collection.get("info") or {}
        items = collection.get("item", [])
        if not isinstance(info, dict):
            raise TransformError("Collection 'info' must be an object")
        if not isinstance(items, list):
            raise TransformError("Collection 'item' must be a list")

        variables = self._variables(collection.get("variable"))
        document: Dict[str, Any] = {
            "openapi": OPENAPI_VERSION,
            "info": {"title": info.get("name") or "API", "version": str(variables.get("version", "1.0.0"))},
        }
        description = _text(info.get("description"))
        if description:
            document["info"]["description"] = description

        servers: List[str] = []
        paths: Dict[str, Dict[str, Any]] = {}
        tags: List[str] = []
        self._walk(items, None, variables, servers, paths, tags)

        if servers:
            document["servers"] = [self._server_entry(url) for url in servers]
        if tags:
            document["tags"] = [{"name": tag} for tag in tags]
        document["paths"] = paths

        scheme = self._security_scheme(collection.get("auth"))
        if scheme is not None:
            name, definition = scheme
            document["components"] = {"securitySchemes": {name: definition}}
            document["security"] = [{name: []}]
        return document

    @staticmethod
    def _variables(raw: Any) -> Dict[str, str]:
        variables: Dict[str, str] = {}
        for entry in raw or []:
            if isinstance(entry, dict) and entry.get("key") and not entry.get("disabled"):
                value = entry.get("value")
                variables[str(entry["key"])] = "" if value is None else str(value)
        return variables

    @staticmethod
    def _substitute(text: str, variables: Dict[str, str]) -> str:
        return VARIABLE_PATTERN.sub(lambda m: variables.get(m.group(1), m.group(0)), text)

    @staticmethod
    def _server_entry(url: str) -> Dict[str, Any]:
        names = VARIABLE_PATTERN.findall(url)
        if not names:
            return {"url": url}
        templated = VARIABLE_PATTERN.sub(lambda m: "{" + m.group(1) + "}", url)
        return {"url": templated, "variables": {name: {"default": name} for name in names}}

    def _walk(
        self,
        items: List[Any],
        folder: Optional[str],
        variables: Dict[str, str],
        servers: List[str],
        paths: Dict[str, Dict[str, Any]],
        tags: List[str],
    ) -> None:
        for item in items:
            if not isinstance(item, dict):
                raise TransformError("Collection items must be objects")
            if "item" in item:
                children = item["item"]
                if not isinstance(children, list):
                    raise TransformError(f"Folder {item.get('name')!r} must contain a list of items")
                self._walk(children, item.get("name") or folder, variables, servers, paths, tags)
            elif "request" in item:
                tag = folder or self.default_tag
                if tag not in tags:
                    tags.append(tag)
                self._add_operation(item, tag, variables, servers, paths)

    def _add_operation(
        self,
        item: Dict[str, Any],
        tag: str,
        variables: Dict[str, str],
        servers: List[str],
        paths: Dict[str, Dict[str, Any]],
    ) -> None:
        request = item["request"]
        if isinstance(request, str):
            request = {"method": "GET", "url": request}
        if not isinstance(request, dict):
            raise TransformError(f"Request {item.get('name')!r} must be an object or URL string")

        method = str(request.get("method") or "GET").lower()
        if method not in HTTP_METHODS:
            raise TransformError(f"Unsupported HTTP method {method.upper()} in {item.get('name')!r}")

        server, path, parameters = self._parse_url(request.get("url"), variables)
        if server and server not in servers:
            servers.append(server)

        parameters.extend(self._header_parameters(request.get("header")))

        operation: Dict[str, Any] = {"tags": [tag], "summary": item.get("name") or f"{method.upper()} {path}"}
        description = _text(request.get("description"))
        if description:
            operation["description"] = description
        if parameters:
            operation["parameters"] = parameters
        body = self._request_body(request.get("body"))
        if body is not None:
            operation["requestBody"] = body
        operation["responses"] = self._responses(item.get("response"))

        auth = request.get("auth")
        if isinstance(auth, dict):
            if auth.get("type") == "noauth":
                operation["security"] = []
            else:
                scheme = self._security_scheme(auth)
                if scheme is not None:
                    operation["security"] = [{scheme[0]: []}]

        path_item = paths.setdefault(path, {})
        if method in path_item:
            logger.warning("Duplicate operation %s %s; keeping the first definition", method.upper(), path)
            return
        path_item[method] = operation

    def _parse_url(self, url: Any, variables: Dict[str, str]) -> Tuple[Optional[str], str, List[Dict[str, Any]]]:
        if url is None:
            return None, "/", []
        if isinstance(url, str):
            url = {"raw": url}
        if not isinstance(url, dict):
            raise TransformError("Request URL must be a string or object")

        query = url.get("query")
        path_vars = {str(v.get("key")): v for v in url.get("variable") or [] if isinstance(v, dict) and v.get("key")}

        if url.get("host") is not None or url.get("path") is not None:
            host = url.get("host") or []
            host = ".".join(host) if isinstance(host, list) else str(host)
            segments = url.get("path") or []
            if isinstance(segments, str):
                segments = [part for part in segments.split("/") if part]
            host = self._substitute(host, variables)
            protocol = url.get("protocol") or "https"
            port = f":{url['port']}" if url.get("port") else ""
            server = None
            if host:
                server = host if "://" in host or host.startswith("{{") else f"{protocol}://{host}{port}"
        else:
            raw = self._substitute(str(url.get("raw") or "/"), variables)
            server, segments, raw_query = self._split_raw(raw)
            if query is None:
                query = raw_query

        parameters: List[Dict[str, Any]] = []
        rendered = []
        for segment in segments:
            segment = self._substitute(str(segment), variables)
            name = None
            if segment.startswith(":") and len(segment) > 1:
                name = segment[1:]
            else:
                match = VARIABLE_PATTERN.fullmatch(segment)
                if match:
                    name = match.group(1)
            if name is None:
                rendered.append(segment)
                continue
            rendered.append("{" + name + "}")
            parameters.append(self._path_parameter(name, path_vars.get(name)))

        for entry in query or []:
            if not isinstance(entry, dict) or entry.get("disabled") or not entry.get("key"):
                continue
            value = entry.get("value")
            parameter: Dict[str, Any] = {"name": entry["key"], "in": "query", "schema": infer_scalar_schema(value)}
            description = _text(entry.get("description"))
            if description:
                parameter["description"] = description
            if value not in (None, ""):
                parameter["example"] = _coerce_example(value)
            parameters.append(parameter)

        return server, "/" + "/".join(rendered), parameters

    @staticmethod
    def _split_raw(raw: str) -> Tuple[Optional[str], List[str], List[Dict[str, Any]]]:
        server = None
        if raw.startswith("{{") and "}}" in raw:
            end = raw.index("}}") + 2
            server, raw = raw[:end], raw[end:]
        elif "://" in raw or not raw.startswith("/"):
            parts = urlsplit(raw if "://" in raw else f"https://{raw}")
            server = f"{parts.scheme}://{parts.netloc}" if parts.netloc else None
            raw = parts.path + (f"?{parts.query}" if parts.query else "")
        path, _, query_string = raw.partition("?")
        query = []
        for pair in filter(None, query_string.split("&")):
            key, _, value = pair.partition("=")
            query.append({"key": key, "value": value})
        segments = [segment for segment in path.split("/") if segment]
        return server, segments, query

    @staticmethod
    def _path_parameter(name: str, variable: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        parameter: Dict[str, Any] = {"name": name, "in": "path", "required": True}
        value = variable.get("value") if variable else None
        parameter["schema"] = infer_scalar_schema(value)
        description = _text(variable.get("description")) if variable else None
        if description:
            parameter["description"] = description
        if value not in (None, ""):
            parameter["example"] = _coerce_example(value)
        return parameter

    @staticmethod
    def _header_parameters(headers: Any) -> List[Dict[str, Any]]:
        parameters = []
        for header in headers or []:
            if not isinstance(header, dict) or header.get("disabled") or not header.get("key"):
                continue
            if str(header["key"]).lower() in SKIPPED_HEADERS:
                continue
            parameter: Dict[str, Any] = {"name": header["key"], "in": "header", "schema": {"type": "string"}}
            if header.get("value"):
                parameter["example"] = header["value"]
            parameters.append(parameter)
        return parameters

    @staticmethod
    def _request_body(body: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(body, dict) or body.get("disabled"):
            return None
        mode = body.get("mode")

        if mode == "raw":
            raw = body.get("raw")
            if raw is not None and not isinstance(raw, str):
                return {"content": {"application/json": {"schema": infer_schema(raw), "example": raw}}}
            if not raw or not raw.strip():
                return None
            try:
                example = json.loads(raw)
            except ValueError:
                return {"content": {"text/plain": {"schema": {"type": "string"}, "example": raw}}}
            return {"content": {"application/json": {"schema": infer_schema(example), "example": example}}}

        if mode in {"urlencoded", "formdata"}:
            properties: Dict[str, Any] = {}
            for field in body.get(mode) or []:
                if not isinstance(field, dict) or field.get("disabled") or not field.get("key"):
                    continue
                if field.get("type") == "file":
                    properties[field["key"]] = {"type": "string", "format": "binary"}
                else:
                    schema = infer_scalar_schema(field.get("value"))
                    if field.get("value"):
                        schema["example"] = _coerce_example(field["value"])
                    properties[field["key"]] = schema
            if not properties:
                return None
            media = "application/x-www-form-urlencoded" if mode == "urlencoded" else "multipart/form-data"
            return {"content": {media: {"schema": {"type": "object", "properties": properties}}}}

        return None

    @staticmethod
    def _responses(saved: Any) -> Dict[str, Any]:
        responses: Dict[str, Any] = {}
        for response in saved or []:
            if not isinstance(response, dict):
                continue
            code = str(response.get("code") or 200)
            if code in responses:
                continue
            entry: Dict[str, Any] = {"description": response.get("name") or response.get("status") or "Successful response"}
            body = response.get("body")
            if body is not None and not isinstance(body, str):
                entry["content"] = {"application/json": {"schema": infer_schema(body), "example": body}}
            elif body:
                try:
                    example = json.loads(body)
                except ValueError:
                    entry["content"] = {"text/plain": {"schema": {"type": "string"}, "example": body}}
                else:
                    entry["content"] = {"application/json": {"schema": infer_schema(example), "example": example}}
            responses[code] = entry
        if not responses:
            responses["200"] = {"description": "Successful response", "content": {"application/json": {}}}
        return responses

    @staticmethod
    def _security_scheme(auth: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        if not isinstance(auth, dict):
            return None
        kind = auth.get("type")
        if kind == "bearer":
            return "bearerAuth", {"type": "http", "scheme": "bearer"}
        if kind == "basic":
            return "basicAuth", {"type": "http", "scheme": "basic"}
        if kind == "apikey":
            settings = {
                str(entry.get("key")): entry.get("value")
                for entry in auth.get("apikey") or []
                if isinstance(entry, dict)
            }
            location = settings.get("in") or "header"
            return "apiKeyAuth", {"type": "apiKey", "in": location, "name": settings.get("key") or "X-API-Key"}
        return None


def build_transform(default_tag: str, output_format: str) -> Transform:
    return PostmanToOpenAPI(default_tag=default_tag, output_format=output_format)
