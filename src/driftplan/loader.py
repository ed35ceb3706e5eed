"""Configuration loader: YAML/JSON documents to a ``Configuration``."""

import logging
import re
from collections.abc import Hashable
from pathlib import Path
from typing import Any

import yaml

from driftplan.errors import ConfigParseError
from driftplan.expressions import parse_value
from driftplan.models import (
    AttributeSchema,
    BlockSchema,
    Configuration,
    DataSourceNode,
    Lifecycle,
    ResourceAddress,
    ResourceNode,
    ResourceSchema,
    ValueType,
    Variable,
)

logger = logging.getLogger(__name__)

SECTIONS = ("variables", "schemas", "data", "resources")
RESOURCE_KEYS = {"attributes", "blocks", "count", "for_each", "depends_on", "lifecycle"}
LIFECYCLE_KEYS = {"ignore_changes", "prevent_destroy"}
ATTRIBUTE_SCHEMA_KEYS = {"type", "default", "immutable", "computed", "sensitive"}
RESERVED_TYPES = {"var", "data", "count", "each"}
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")

NAME_PATTERN = re.compile(r"^[A-Za-z_][\w-]*$")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                raise ConfigParseError(
                    f"unhashable key {key!r} at line {key_node.start_mark.line + 1}"
                )
            if key in seen:
                raise ConfigParseError(
                    f"duplicate key {key!r} at line {key_node.start_mark.line + 1}"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _require_mapping(value: Any, location: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigParseError(f"expected a mapping, got {type(value).__name__}", address=location)
    return value


def _require_name(name: Any, location: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ConfigParseError(f"invalid name {name!r}", address=location)
    return name


def _value_type(value: Any, location: str) -> ValueType:
    try:
        return ValueType(value or "any")
    except ValueError:
        allowed = ", ".join(t.value for t in ValueType)
        raise ConfigParseError(
            f"unknown type {value!r} (expected one of {allowed})", address=location
        ) from None


def _parse_variables(section: dict) -> dict[str, Variable]:
    variables = {}
    for name, declaration in section.items():
        location = f"var.{_require_name(name, 'variables')}"
        if not isinstance(declaration, dict):
            declaration = {"default": declaration}
        unknown = set(declaration) - {"type", "default", "sensitive", "description"}
        if unknown:
            raise ConfigParseError(f"unknown keys {sorted(unknown)}", address=location)
        variables[name] = Variable(
            name=name,
            type=_value_type(declaration.get("type"), location),
            default=declaration.get("default"),
            sensitive=bool(declaration.get("sensitive", False)),
            description=str(declaration.get("description", "")),
        )
    return variables


def _parse_attribute_schemas(section: Any, location: str) -> dict[str, AttributeSchema]:
    attributes = {}
    for name, declaration in _require_mapping(section, location).items():
        attr_location = f"{location}.{_require_name(name, location)}"
        declaration = _require_mapping(declaration, attr_location)
        unknown = set(declaration) - ATTRIBUTE_SCHEMA_KEYS
        if unknown:
            raise ConfigParseError(f"unknown keys {sorted(unknown)}", address=attr_location)
        if declaration.get("computed") and declaration.get("default") is not None:
            raise ConfigParseError(
                "computed attributes cannot have a default", address=attr_location
            )
        attributes[name] = AttributeSchema(
            type=_value_type(declaration.get("type"), attr_location),
            default=declaration.get("default"),
            immutable=bool(declaration.get("immutable", False)),
            computed=bool(declaration.get("computed", False)),
            sensitive=bool(declaration.get("sensitive", False)),
        )
    return attributes


def _parse_schemas(section: dict) -> dict[str, ResourceSchema]:
    schemas = {}
    for resource_type, declaration in section.items():
        location = f"schemas.{_require_name(resource_type, 'schemas')}"
        declaration = _require_mapping(declaration, location)
        unknown = set(declaration) - {"attributes", "blocks"}
        if unknown:
            raise ConfigParseError(f"unknown keys {sorted(unknown)}", address=location)
        blocks = {}
        for block_name, block in _require_mapping(declaration.get("blocks"), location).items():
            block_location = f"{location}.blocks.{_require_name(block_name, location)}"
            block = _require_mapping(block, block_location)
            blocks[block_name] = BlockSchema(
                attributes=_parse_attribute_schemas(
                    block.get("attributes"), f"{block_location}.attributes"
                ),
                immutable=bool(block.get("immutable", False)),
            )
        schemas[resource_type] = ResourceSchema(
            attributes=_parse_attribute_schemas(
                declaration.get("attributes"), f"{location}.attributes"
            ),
            blocks=blocks,
        )
    return schemas


def _parse_data_sources(section: dict) -> dict[str, DataSourceNode]:
    data_sources = {}
    for data_type, instances in section.items():
        type_location = f"data.{_require_name(data_type, 'data')}"
        for name, query in _require_mapping(instances, type_location).items():
            location = f"{type_location}.{_require_name(name, type_location)}"
            node = DataSourceNode(
                data_type=data_type,
                name=name,
                query=parse_value(_require_mapping(query, location), location),
            )
            data_sources[node.address] = node
    return data_sources


def _parse_lifecycle(declaration: Any, location: str) -> Lifecycle:
    declaration = _require_mapping(declaration, location)
    unknown = set(declaration) - LIFECYCLE_KEYS
    if unknown:
        raise ConfigParseError(f"unknown keys {sorted(unknown)}", address=location)
    ignore = declaration.get("ignore_changes", [])
    prevent_destroy = bool(declaration.get("prevent_destroy", False))
    if ignore == "all":
        return Lifecycle(ignore_all_changes=True, prevent_destroy=prevent_destroy)
    if not isinstance(ignore, list) or not all(isinstance(i, str) for i in ignore):
        raise ConfigParseError(
            "ignore_changes must be a list of attribute names or 'all'",
            address=location,
            attribute="ignore_changes",
        )
    return Lifecycle(ignore_changes=tuple(ignore), prevent_destroy=prevent_destroy)


def _parse_blocks(declaration: Any, location: str) -> dict[str, list[dict[str, Any]]]:
    blocks = {}
    for name, body in _require_mapping(declaration, location).items():
        block_location = f"{location}.{_require_name(name, location)}"
        items = body if isinstance(body, list) else [body]
        blocks[name] = [
            parse_value(_require_mapping(item, f"{block_location}[{i}]"), f"{block_location}[{i}]")
            for i, item in enumerate(items)
        ]
    return blocks


def _parse_depends_on(declaration: Any, location: str) -> tuple[ResourceAddress, ...]:
    if declaration is None:
        return ()
    if not isinstance(declaration, list):
        raise ConfigParseError("depends_on must be a list", address=location)
    addresses = []
    for item in declaration:
        resource_type, _, name = str(item).partition(".")
        if not NAME_PATTERN.match(resource_type) or not NAME_PATTERN.match(name):
            raise ConfigParseError(f"invalid dependency {item!r}", address=location)
        addresses.append(ResourceAddress(resource_type, name))
    return tuple(addresses)


def _parse_resource(resource_type: str, name: str, declaration: Any) -> ResourceNode:
    location = f"{resource_type}.{name}"
    declaration = _require_mapping(declaration, location)
    unknown = set(declaration) - RESOURCE_KEYS
    if unknown:
        raise ConfigParseError(
            f"unknown keys {sorted(unknown)} (attributes belong under 'attributes')",
            address=location,
        )
    if declaration.get("count") is not None and declaration.get("for_each") is not None:
        raise ConfigParseError("count and for_each are mutually exclusive", address=location)

    count = declaration.get("count")
    if isinstance(count, bool) or (
        count is not None and not isinstance(count, (int, str))
    ) or (isinstance(count, int) and count < 0):
        raise ConfigParseError(
            f"count must be a non-negative integer, got {count!r}",
            address=location,
            attribute="count",
        )

    for_each = declaration.get("for_each")
    if for_each is not None and not isinstance(for_each, (list, dict, str)):
        raise ConfigParseError(
            "for_each must be a list, a map or an expression",
            address=location,
            attribute="for_each",
        )

    attributes = _require_mapping(declaration.get("attributes"), f"{location}.attributes")
    for attr in attributes:
        _require_name(attr, f"{location}.attributes")

    return ResourceNode(
        resource_type=resource_type,
        name=name,
        attributes={
            k: parse_value(v, f"{location}.attributes.{k}") for k, v in attributes.items()
        },
        blocks=_parse_blocks(declaration.get("blocks"), f"{location}.blocks"),
        count=parse_value(count, f"{location}.count"),
        for_each=parse_value(for_each, f"{location}.for_each"),
        depends_on=_parse_depends_on(declaration.get("depends_on"), f"{location}.depends_on"),
        lifecycle=_parse_lifecycle(declaration.get("lifecycle"), f"{location}.lifecycle"),
    )


def _parse_resources(section: dict) -> dict[ResourceAddress, ResourceNode]:
    resources = {}
    for resource_type, instances in section.items():
        _require_name(resource_type, "resources")
        if resource_type in RESERVED_TYPES:
            raise ConfigParseError(f"{resource_type!r} is a reserved name", address="resources")
        for name, declaration in _require_mapping(instances, f"resources.{resource_type}").items():
            _require_name(name, f"resources.{resource_type}")
            node = _parse_resource(resource_type, name, declaration)
            resources[node.address] = node
    return resources


def _check_computed(config: Configuration) -> None:
    for address, node in config.resources.items():
        schema = config.schema_for(node.resource_type)
        for name in node.attributes:
            if schema.is_computed(name):
                raise ConfigParseError(
                    "attribute is computed by the provider and cannot be configured",
                    address=str(address),
                    attribute=name,
                )


def build_configuration(document: Any) -> Configuration:
    """Build a ``Configuration`` from a parsed document."""
    document = _require_mapping(document, "<document>")
    unknown = set(document) - set(SECTIONS)
    if unknown:
        raise ConfigParseError(f"unknown top-level sections {sorted(unknown)}")

    config = Configuration(
        variables=_parse_variables(_require_mapping(document.get("variables"), "variables")),
        schemas=_parse_schemas(_require_mapping(document.get("schemas"), "schemas")),
        data_sources=_parse_data_sources(_require_mapping(document.get("data"), "data")),
        resources=_parse_resources(_require_mapping(document.get("resources"), "resources")),
    )
    _check_computed(config)
    logger.debug(
        "Loaded %d resources, %d data sources, %d variables",
        len(config.resources),
        len(config.data_sources),
        len(config.variables),
    )
    return config


def parse_document(text: str, source: str = "<string>") -> dict:
    """Parse YAML or JSON text, rejecting duplicate keys."""
    try:
        document = yaml.load(text, Loader=_UniqueKeyLoader)
    except ConfigParseError as exc:
        raise ConfigParseError(f"{source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"{source}: malformed document: {exc}") from exc
    return _require_mapping(document, source)


def load_text(text: str, source: str = "<string>") -> Configuration:
    """Load a configuration from YAML or JSON text."""
    return build_configuration(parse_document(text, source))


def _merge(target: dict, document: dict, source: str) -> None:
    for section, body in document.items():
        if section not in SECTIONS:
            raise ConfigParseError(f"{source}: unknown top-level section {section!r}")
        merged = target.setdefault(section, {})
        for key, value in _require_mapping(body, f"{source}: {section}").items():
            if section in ("variables", "schemas"):
                if key in merged:
                    raise ConfigParseError(f"{source}: {section}.{key} is declared twice")
                merged[key] = value
                continue
            group = merged.setdefault(key, {})
            for name, declaration in _require_mapping(value, f"{source}: {section}.{key}").items():
                if name in group:
                    raise ConfigParseError(f"{source}: {section}.{key}.{name} is declared twice")
                group[name] = declaration


def load_path(path: str | Path) -> Configuration:
    """Load a configuration file, or every config file in a directory."""
    path = Path(path)
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix in CONFIG_SUFFIXES and p.is_file())
        if not files:
            raise ConfigParseError(f"{path}: no configuration files found")
    elif path.is_file():
        files = [path]
    else:
        raise ConfigParseError(f"{path}: no such file or directory")

    merged: dict = {}
    for file in files:
        logger.debug("Reading %s", file)
        _merge(merged, parse_document(file.read_text(), str(file)), str(file))
    return build_configuration(merged)
