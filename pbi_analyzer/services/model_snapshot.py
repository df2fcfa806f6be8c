"""In-memory tree of a semantic model's metadata.

The model gateway returns the model as TMSL-style JSON (camelCase keys,
``model.tables[].columns[]`` ...). This module flattens it into
:class:`ModelObject` instances, in declaration order, whose ``properties``
use the PascalCase names rule expressions are written against
(``Name``, ``DataType``, ``IsHidden``, ``Table``, ``Columns`` ...).
"""

import re
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterator, List, Optional

# Properties whose values are enum member names (TMSL uses camelCase values)
ENUM_PROPERTIES = {
    "CrossFilteringBehavior",
    "DataCategory",
    "DataType",
    "DefaultMode",
    "FromCardinality",
    "Mode",
    "ModelPermission",
    "SecurityFilteringBehavior",
    "State",
    "SummarizeBy",
    "ToCardinality",
    "Type",
}

# Defaults TMSL omits but rules rely on
OBJECT_DEFAULTS = {
    "DataColumn": {"IsHidden": False, "SummarizeBy": "Default", "Description": "", "DisplayFolder": "", "FormatString": "", "IsAvailableInMDX": True, "IsKey": False},
    "CalculatedColumn": {"IsHidden": False, "SummarizeBy": "Default", "Description": "", "DisplayFolder": "", "FormatString": "", "IsAvailableInMDX": True, "IsKey": False},
    "CalculatedTableColumn": {"IsHidden": False, "SummarizeBy": "Default", "Description": "", "DisplayFolder": "", "FormatString": "", "IsAvailableInMDX": True, "IsKey": False},
    "Measure": {"IsHidden": False, "Description": "", "DisplayFolder": "", "FormatString": "", "Expression": ""},
    "Table": {"IsHidden": False, "Description": ""},
    "CalculatedTable": {"IsHidden": False, "Description": ""},
    "CalculationGroupTable": {"IsHidden": False, "Description": ""},
    "Hierarchy": {"IsHidden": False, "Description": "", "DisplayFolder": ""},
    "Relationship": {"IsActive": True, "CrossFilteringBehavior": "OneDirection", "FromCardinality": "Many", "ToCardinality": "One"},
}

_LINE_JOINED = {"Expression", "Description", "FormatStringDefinition"}
_CHILD_COLLECTIONS = {"columns", "measures", "hierarchies", "partitions", "calculationGroup", "annotations"}


def _pascal(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


def _convert_value(key: str, value: Any) -> Any:
    if key in _LINE_JOINED and isinstance(value, list):
        return "\n".join(str(v) for v in value)
    if key in ENUM_PROPERTIES and isinstance(value, str):
        return _pascal(value)
    if key == "Annotations" and isinstance(value, list):
        return {a.get("name"): a.get("value") for a in value if isinstance(a, dict)}
    return value


def convert_properties(raw: Dict[str, Any], object_type: str, skip: Collection[str] = ()) -> Dict[str, Any]:
    """Convert a TMSL object to PascalCase properties with type defaults applied."""
    props: Dict[str, Any] = dict(OBJECT_DEFAULTS.get(object_type, {}))
    for key, value in raw.items():
        if key in skip:
            continue
        name = _pascal(key)
        props[name] = _convert_value(name, value)
    props["Annotations"] = _convert_value("Annotations", raw.get("annotations", []))
    props["ObjectType"] = object_type
    return props


def quote_table(table: str) -> str:
    return "'" + table.replace("'", "''") + "'"


@dataclass
class ModelObject:
    """One rule-addressable object of the model."""

    object_type: str
    name: str
    table: Optional[str]
    properties: Dict[str, Any]
    path: Optional[str] = None

    @property
    def affected_object(self) -> str:
        """Stable human-readable path, e.g. 'Sales'[Amount]."""
        if self.path is not None:
            return self.path
        if self.object_type in ("Table", "CalculatedTable", "CalculationGroupTable"):
            return quote_table(self.name)
        if self.table is not None:
            return f"{quote_table(self.table)}[{self.name}]"
        if self.object_type == "Model":
            return self.name
        return f"[{self.name}]"


@dataclass
class ModelSnapshot:
    """Immutable view of a model at one point in time."""

    name: str
    compatibility_level: Optional[int] = None
    objects: List[ModelObject] = field(default_factory=list)

    def iter_objects(self, object_types: Optional[Collection[str]] = None) -> Iterator[ModelObject]:
        """Yield objects in declaration order, optionally filtered by type."""
        for obj in self.objects:
            if object_types is None or obj.object_type in object_types:
                yield obj

    def find(self, affected_object: str, object_type: Optional[str] = None) -> Optional[ModelObject]:
        for obj in self.objects:
            if obj.affected_object == affected_object and (object_type is None or obj.object_type == object_type):
                return obj
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], database_name: Optional[str] = None) -> "ModelSnapshot":
        """
        Build a snapshot from TMSL-style JSON.

        Args:
            data: Either a database object with a "model" key or the model itself
            database_name: Fallback model name

        Returns:
            Snapshot with objects in declaration order
        """
        root = data.get("model") or data
        name = data.get("name") or root.get("name") or database_name or "Model"
        compatibility_level = data.get("compatibilityLevel")

        builder = _SnapshotBuilder(name, compatibility_level, root)
        return cls(name=name, compatibility_level=compatibility_level, objects=builder.build())


class _SnapshotBuilder:
    def __init__(self, name: str, compatibility_level: Optional[int], root: Dict[str, Any]):
        self.name = name
        self.compatibility_level = compatibility_level
        self.root = root
        self.objects: List[ModelObject] = []

    def build(self) -> List[ModelObject]:
        model_props = convert_properties(self.root, "Model", skip={"tables", "relationships", "roles", "expressions", "dataSources", "perspectives", "cultures"})
        model_props["Name"] = self.name
        model_props["CompatibilityLevel"] = self.compatibility_level
        model = ModelObject("Model", self.name, None, model_props)
        self.objects.append(model)

        tables = [self._add_table(t) for t in self.root.get("tables", [])]
        relationships = [self._add_relationship(r) for r in self.root.get("relationships", [])]
        roles = [self._add_simple(r, "ModelRole", skip={"members"}) for r in self.root.get("roles", [])]
        expressions = [self._add_simple(e, "NamedExpression") for e in self.root.get("expressions", [])]
        data_sources = [self._add_simple(d, _data_source_type(d)) for d in self.root.get("dataSources", [])]

        model_props["Tables"] = tables
        model_props["Relationships"] = relationships
        model_props["Roles"] = roles
        model_props["Expressions"] = expressions
        model_props["DataSources"] = data_sources
        model_props["Perspectives"] = list(self.root.get("perspectives", []))
        model_props["Cultures"] = list(self.root.get("cultures", []))

        self._link_dependencies(model_props, relationships)
        return self.objects

    def _add_table(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        partitions_raw = raw.get("partitions", [])
        if raw.get("calculationGroup"):
            table_type = "CalculationGroupTable"
        elif any((p.get("source") or {}).get("type") == "calculated" for p in partitions_raw):
            table_type = "CalculatedTable"
        else:
            table_type = "Table"

        name = raw.get("name", "")
        table = convert_properties(raw, table_type, skip=_CHILD_COLLECTIONS)
        self.objects.append(ModelObject(table_type, name, None, table))

        columns = []
        for col in raw.get("columns", []):
            column_type = _column_type(col, table_type)
            if column_type is None:
                continue
            props = convert_properties(col, column_type)
            props["Table"] = table
            columns.append(props)
            self.objects.append(ModelObject(column_type, props.get("Name", ""), name, props))

        measures = []
        for measure in raw.get("measures", []):
            props = convert_properties(measure, "Measure", skip={"kpi"})
            props["Table"] = table
            props["KPI"] = measure.get("kpi")
            measures.append(props)
            self.objects.append(ModelObject("Measure", props.get("Name", ""), name, props))

        hierarchies = []
        for hierarchy in raw.get("hierarchies", []):
            props = convert_properties(hierarchy, "Hierarchy", skip={"levels"})
            props["Table"] = table
            props["Levels"] = [convert_properties(level, "Level") for level in hierarchy.get("levels", [])]
            hierarchies.append(props)
            self.objects.append(ModelObject("Hierarchy", props.get("Name", ""), name, props))

        partitions = []
        for partition in partitions_raw:
            props = convert_properties(partition, "Partition", skip={"source"})
            source = partition.get("source") or {}
            props["SourceType"] = _pascal(source.get("type", "query"))
            props["Expression"] = _convert_value("Expression", source.get("expression", source.get("query", "")))
            props["Table"] = table
            partitions.append(props)
            self.objects.append(ModelObject("Partition", props.get("Name", ""), name, props))

        calculation_items = []
        for item in (raw.get("calculationGroup") or {}).get("calculationItems", []):
            props = convert_properties(item, "CalculationItem")
            props["Table"] = table
            calculation_items.append(props)
            self.objects.append(ModelObject("CalculationItem", props.get("Name", ""), name, props))

        table["Columns"] = columns
        table["Measures"] = measures
        table["Hierarchies"] = hierarchies
        table["Partitions"] = partitions
        table["CalculationItems"] = calculation_items
        return table

    def _add_relationship(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        props = convert_properties(raw, "Relationship")
        path = (
            f"{quote_table(raw.get('fromTable', ''))}[{raw.get('fromColumn', '')}]"
            f" -> {quote_table(raw.get('toTable', ''))}[{raw.get('toColumn', '')}]"
        )
        name = raw.get("name") or path
        props["Name"] = name
        self.objects.append(ModelObject("Relationship", name, None, props, path=path))
        return props

    def _add_simple(self, raw: Dict[str, Any], object_type: str, skip: Collection[str] = ()) -> Dict[str, Any]:
        props = convert_properties(raw, object_type, skip=skip)
        self.objects.append(ModelObject(object_type, props.get("Name", ""), None, props))
        return props

    def _link_dependencies(self, model_props: Dict[str, Any], relationships: List[Dict[str, Any]]) -> None:
        """Fill UsedInRelationships / UsedInSortBy / UsedInHierarchies / ReferencedBy."""
        tables = model_props["Tables"]
        expression_owners = [
            props
            for table in tables
            for props in table["Measures"] + table["Columns"] + table["Partitions"] + table["CalculationItems"]
            if props.get("Expression") and (props["ObjectType"] != "Partition" or props.get("SourceType") == "Calculated")
        ]

        # Relationship ends point at the table and column objects they join
        tables_by_name = {table.get("Name", ""): table for table in tables}
        columns_by_key = {
            (table.get("Name", ""), column.get("Name", "")): column for table in tables for column in table["Columns"]
        }
        for relationship in relationships:
            from_key = (relationship.get("FromTable"), relationship.get("FromColumn"))
            to_key = (relationship.get("ToTable"), relationship.get("ToColumn"))
            relationship["FromTable"] = tables_by_name.get(from_key[0])
            relationship["FromColumn"] = columns_by_key.get(from_key)
            relationship["ToTable"] = tables_by_name.get(to_key[0])
            relationship["ToColumn"] = columns_by_key.get(to_key)

        for table in tables:
            table_name = table.get("Name", "")
            table["UsedInRelationships"] = [
                r for r in relationships if r["FromTable"] is table or r["ToTable"] is table
            ]
            table_ref = re.compile(r"(?:'" + re.escape(table_name.replace("'", "''")) + r"'|\b" + re.escape(table_name) + r"\b)", re.IGNORECASE)
            table["ReferencedBy"] = [o for o in expression_owners if o["Table"] is not table and table_ref.search(o["Expression"])]

            for column in table["Columns"]:
                column_name = column.get("Name", "")
                column["UsedInRelationships"] = [
                    r for r in relationships if r["FromColumn"] is column or r["ToColumn"] is column
                ]
                column["UsedInSortBy"] = [c for c in table["Columns"] if c.get("SortByColumn") == column_name]
                column["UsedInHierarchies"] = [
                    h for h in table["Hierarchies"] if any(level.get("Column") == column_name for level in h["Levels"])
                ]

            for props in table["Columns"] + table["Measures"]:
                ref = "[" + props.get("Name", "").lower() + "]"
                props["ReferencedBy"] = [
                    o for o in expression_owners if o is not props and ref in o["Expression"].lower()
                ]


def _column_type(raw: Dict[str, Any], table_type: str) -> Optional[str]:
    column_type = raw.get("type", "data")
    if column_type == "rowNumber":
        return None
    if column_type == "calculated":
        return "CalculatedColumn"
    if column_type == "calculatedTableColumn" or table_type == "CalculatedTable":
        return "CalculatedTableColumn"
    return "DataColumn"


def _data_source_type(raw: Dict[str, Any]) -> str:
    return "StructuredDataSource" if raw.get("type") == "structured" else "ProviderDataSource"
