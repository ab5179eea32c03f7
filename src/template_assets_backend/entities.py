"""
Organisation entities: assets, themes, layouts, frames, flows, content types
and data templates.

Create functions take an open connection (normally the import transaction),
validate their attributes and insert. Validation failures and constraint
violations both surface as :class:`EntityCreationFailed`, naming the entity
and listing ``"<field>: <message>"`` errors. Getters are scoped to an
organisation and return ``None`` when the row is missing or belongs to
someone else.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import EntityCreationFailed
from .utils import new_id, serialize_datetime, utc_now


@dataclass(frozen=True)
class CurrentUser:
    id: str
    organisation_id: str


@dataclass
class Asset:
    id: str
    name: str
    type: str
    file_name: str
    content_type: str
    storage_key: str
    size: int
    organisation_id: str
    creator_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Theme:
    id: str
    name: str
    font: Optional[str]
    primary_color: Optional[str]
    secondary_color: Optional[str]
    body_color: Optional[str]
    organisation_id: str
    creator_id: str
    assets: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Layout:
    id: str
    name: str
    description: str
    slug: str
    meta: Any
    width: float
    height: float
    unit: str
    engine_id: Optional[str]
    frame_id: Optional[str]
    asset_id: Optional[str]
    organisation_id: str
    creator_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Frame:
    id: str
    name: str
    description: Optional[str]
    type: str
    asset_id: Optional[str]
    organisation_id: str
    creator_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FlowState:
    id: str
    state: str
    order: int


@dataclass
class Flow:
    id: str
    name: str
    controlled: bool
    organisation_id: str
    creator_id: str
    states: List[FlowState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContentTypeField:
    id: str
    name: str
    key: str
    description: Optional[str]
    field_type_id: str
    field_type: Optional[str] = None


@dataclass
class ContentType:
    id: str
    name: str
    description: Optional[str]
    color: Optional[str]
    prefix: str
    theme_id: Optional[str]
    layout_id: Optional[str]
    flow_id: Optional[str]
    organisation_id: str
    creator_id: str
    fields: List[ContentTypeField] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DataTemplate:
    id: str
    title: str
    title_template: Optional[str]
    data: str
    serialized: Dict[str, Any]
    content_type_id: str
    organisation_id: str
    creator_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --- helpers ---------------------------------------------------------------


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require(entity: str, params: Mapping[str, Any], keys: Sequence[str]) -> None:
    errors = [f"{key}: can't be blank" for key in keys if _blank(params.get(key))]
    if errors:
        raise EntityCreationFailed(entity, errors)


def _execute(conn: sqlite3.Connection, entity: str, sql: str, values: Sequence[Any]) -> None:
    try:
        conn.execute(sql, tuple(values))
    except sqlite3.IntegrityError as exc:
        message = str(exc)
        if message.startswith("UNIQUE constraint failed"):
            column = message.rsplit(".", 1)[-1]
            message = f"{column}: {entity} with the same {column} exists. Use another {column}."
        raise EntityCreationFailed(entity, [message]) from exc


def _now() -> str:
    return serialize_datetime(utc_now())


# --- assets ----------------------------------------------------------------


def create_asset(
    conn: sqlite3.Connection,
    user: CurrentUser,
    *,
    asset_id: str,
    name: str,
    asset_type: str,
    file_name: str,
    content_type: str,
    storage_key: str,
    size: int,
) -> Asset:
    """Insert the row for a blob that has already been written to storage."""
    asset = Asset(
        id=asset_id,
        name=name,
        type=asset_type,
        file_name=file_name,
        content_type=content_type,
        storage_key=storage_key,
        size=size,
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _require("asset", asdict(asset), ("name", "type", "file_name", "storage_key"))
    _execute(
        conn,
        "asset",
        """
        INSERT INTO assets (id, name, type, file_name, content_type, storage_key, size,
                            organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            asset.id,
            asset.name,
            asset.type,
            asset.file_name,
            asset.content_type,
            asset.storage_key,
            asset.size,
            asset.organisation_id,
            asset.creator_id,
            _now(),
        ),
    )
    return asset


def get_asset(conn: sqlite3.Connection, asset_id: str, organisation_id: str) -> Optional[Asset]:
    row = conn.execute(
        "SELECT * FROM assets WHERE id = ? AND organisation_id = ?", (asset_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    return Asset(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        file_name=row["file_name"],
        content_type=row["content_type"],
        storage_key=row["storage_key"],
        size=row["size"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
    )


def _split_ids(ids: Optional[str]) -> List[str]:
    return [part.strip() for part in (ids or "").split(",") if part.strip()]


# --- themes ----------------------------------------------------------------


def create_theme(conn: sqlite3.Connection, user: CurrentUser, params: Mapping[str, Any]) -> Theme:
    """
    Create a theme and attach its font assets.

    ``params["assets"]`` is a comma-joined string of asset ids; every id must
    name an asset of the same organisation.
    """
    _require("theme", params, ("name",))
    theme = Theme(
        id=new_id(),
        name=params["name"],
        font=params.get("font"),
        primary_color=params.get("primary_color"),
        secondary_color=params.get("secondary_color"),
        body_color=params.get("body_color"),
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "theme",
        """
        INSERT INTO themes (id, name, font, primary_color, secondary_color, body_color,
                            organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            theme.id,
            theme.name,
            theme.font,
            theme.primary_color,
            theme.secondary_color,
            theme.body_color,
            theme.organisation_id,
            theme.creator_id,
            _now(),
        ),
    )

    for position, asset_id in enumerate(_split_ids(params.get("assets"))):
        if get_asset(conn, asset_id, user.organisation_id) is None:
            raise EntityCreationFailed("theme", [f"assets: asset {asset_id} not found"])
        _execute(
            conn,
            "theme",
            "INSERT INTO theme_assets (theme_id, asset_id, position) VALUES (?, ?, ?)",
            (theme.id, asset_id, position),
        )
        theme.assets.append(asset_id)
    return theme


def get_theme(conn: sqlite3.Connection, theme_id: str, organisation_id: str) -> Optional[Theme]:
    row = conn.execute(
        "SELECT * FROM themes WHERE id = ? AND organisation_id = ?", (theme_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    asset_rows = conn.execute(
        "SELECT asset_id FROM theme_assets WHERE theme_id = ? ORDER BY position", (theme_id,)
    ).fetchall()
    return Theme(
        id=row["id"],
        name=row["name"],
        font=row["font"],
        primary_color=row["primary_color"],
        secondary_color=row["secondary_color"],
        body_color=row["body_color"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
        assets=[asset_row["asset_id"] for asset_row in asset_rows],
    )


# --- frames ----------------------------------------------------------------


def create_frame(conn: sqlite3.Connection, user: CurrentUser, params: Mapping[str, Any]) -> Frame:
    _require("frame", params, ("name", "type"))
    if params["type"] not in ("latex", "typst"):
        raise EntityCreationFailed("frame", ["type: is invalid"])
    frame = Frame(
        id=new_id(),
        name=params["name"],
        description=params.get("description"),
        type=params["type"],
        asset_id=params.get("asset_id"),
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "frame",
        """
        INSERT INTO frames (id, name, description, type, asset_id, organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            frame.id,
            frame.name,
            frame.description,
            frame.type,
            frame.asset_id,
            frame.organisation_id,
            frame.creator_id,
            _now(),
        ),
    )
    return frame


def get_frame(conn: sqlite3.Connection, frame_id: str, organisation_id: str) -> Optional[Frame]:
    row = conn.execute(
        "SELECT * FROM frames WHERE id = ? AND organisation_id = ?", (frame_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    return Frame(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        type=row["type"],
        asset_id=row["asset_id"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
    )


# --- layouts ---------------------------------------------------------------


def create_layout(conn: sqlite3.Connection, user: CurrentUser, params: Mapping[str, Any]) -> Layout:
    _require("layout", params, ("name", "description", "slug", "width", "height", "unit"))
    layout = Layout(
        id=new_id(),
        name=params["name"],
        description=params["description"],
        slug=params["slug"],
        meta=params.get("meta"),
        width=float(params["width"]),
        height=float(params["height"]),
        unit=params["unit"],
        engine_id=params.get("engine_id"),
        frame_id=params.get("frame_id"),
        asset_id=params.get("asset_id"),
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "layout",
        """
        INSERT INTO layouts (id, name, description, slug, meta, width, height, unit, engine_id,
                             frame_id, asset_id, organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            layout.id,
            layout.name,
            layout.description,
            layout.slug,
            json.dumps(layout.meta),
            layout.width,
            layout.height,
            layout.unit,
            layout.engine_id,
            layout.frame_id,
            layout.asset_id,
            layout.organisation_id,
            layout.creator_id,
            _now(),
        ),
    )
    return layout


def get_layout(conn: sqlite3.Connection, layout_id: str, organisation_id: str) -> Optional[Layout]:
    row = conn.execute(
        "SELECT * FROM layouts WHERE id = ? AND organisation_id = ?", (layout_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    return Layout(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        slug=row["slug"],
        meta=json.loads(row["meta"]) if row["meta"] else None,
        width=row["width"],
        height=row["height"],
        unit=row["unit"],
        engine_id=row["engine_id"],
        frame_id=row["frame_id"],
        asset_id=row["asset_id"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
    )


# --- flows -----------------------------------------------------------------


def create_flow(conn: sqlite3.Connection, user: CurrentUser, params: Mapping[str, Any]) -> Flow:
    _require("flow", params, ("name",))
    flow = Flow(
        id=new_id(),
        name=params["name"],
        controlled=bool(params.get("controlled", False)),
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "flow",
        "INSERT INTO flows (id, name, controlled, organisation_id, creator_id, inserted_at) VALUES (?, ?, ?, ?, ?, ?)",
        (flow.id, flow.name, int(flow.controlled), flow.organisation_id, flow.creator_id, _now()),
    )
    return flow


def create_default_states(conn: sqlite3.Connection, flow: Flow) -> List[FlowState]:
    """Every new flow starts with Draft followed by Publish."""
    for order, state in enumerate(("Draft", "Publish"), start=1):
        flow_state = FlowState(id=new_id(), state=state, order=order)
        _execute(
            conn,
            "flow_state",
            "INSERT INTO flow_states (id, flow_id, state, position) VALUES (?, ?, ?, ?)",
            (flow_state.id, flow.id, flow_state.state, flow_state.order),
        )
        flow.states.append(flow_state)
    return flow.states


def get_flow(conn: sqlite3.Connection, flow_id: str, organisation_id: str) -> Optional[Flow]:
    row = conn.execute(
        "SELECT * FROM flows WHERE id = ? AND organisation_id = ?", (flow_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    state_rows = conn.execute(
        "SELECT * FROM flow_states WHERE flow_id = ? ORDER BY position", (flow_id,)
    ).fetchall()
    return Flow(
        id=row["id"],
        name=row["name"],
        controlled=bool(row["controlled"]),
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
        states=[FlowState(id=s["id"], state=s["state"], order=s["position"]) for s in state_rows],
    )


# --- content types ---------------------------------------------------------


def create_content_type(conn: sqlite3.Connection, user: CurrentUser, params: Mapping[str, Any]) -> ContentType:
    """
    Create a content type with its fields.

    Each field needs a ``field_type_id``; a field whose type could not be
    resolved arrives here with ``None`` and is rejected.
    """
    _require("content_type", params, ("name", "prefix"))
    fields = list(params.get("fields") or [])
    errors = []
    for index, field_params in enumerate(fields):
        for key in ("name", "field_type_id"):
            if _blank(field_params.get(key)):
                errors.append(f"fields[{index}].{key}: can't be blank")
    if errors:
        raise EntityCreationFailed("content_type", errors)

    content_type = ContentType(
        id=new_id(),
        name=params["name"],
        description=params.get("description"),
        color=params.get("color"),
        prefix=params["prefix"],
        theme_id=params.get("theme_id"),
        layout_id=params.get("layout_id"),
        flow_id=params.get("flow_id"),
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "content_type",
        """
        INSERT INTO content_types (id, name, description, color, prefix, theme_id, layout_id, flow_id,
                                   organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            content_type.id,
            content_type.name,
            content_type.description,
            content_type.color,
            content_type.prefix,
            content_type.theme_id,
            content_type.layout_id,
            content_type.flow_id,
            content_type.organisation_id,
            content_type.creator_id,
            _now(),
        ),
    )

    for position, field_params in enumerate(fields):
        ct_field = ContentTypeField(
            id=new_id(),
            name=field_params["name"],
            key=field_params.get("key") or field_params["name"],
            description=field_params.get("description"),
            field_type_id=field_params["field_type_id"],
        )
        _execute(
            conn,
            "content_type",
            """
            INSERT INTO content_type_fields (id, content_type_id, name, key, description, field_type_id, position)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ct_field.id,
                content_type.id,
                ct_field.name,
                ct_field.key,
                ct_field.description,
                ct_field.field_type_id,
                position,
            ),
        )
        content_type.fields.append(ct_field)
    return content_type


def get_content_type(conn: sqlite3.Connection, content_type_id: str, organisation_id: str) -> Optional[ContentType]:
    row = conn.execute(
        "SELECT * FROM content_types WHERE id = ? AND organisation_id = ?", (content_type_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    field_rows = conn.execute(
        """
        SELECT f.*, t.name AS field_type_name
        FROM content_type_fields f JOIN field_types t ON t.id = f.field_type_id
        WHERE f.content_type_id = ? ORDER BY f.position
        """,
        (content_type_id,),
    ).fetchall()
    return ContentType(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        prefix=row["prefix"],
        theme_id=row["theme_id"],
        layout_id=row["layout_id"],
        flow_id=row["flow_id"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
        fields=[
            ContentTypeField(
                id=f["id"],
                name=f["name"],
                key=f["key"],
                description=f["description"],
                field_type_id=f["field_type_id"],
                field_type=f["field_type_name"],
            )
            for f in field_rows
        ],
    )


# --- data templates --------------------------------------------------------


def create_data_template(
    conn: sqlite3.Connection, user: CurrentUser, content_type: ContentType, params: Mapping[str, Any]
) -> DataTemplate:
    _require("data_template", params, ("title", "data"))
    data_template = DataTemplate(
        id=new_id(),
        title=params["title"],
        title_template=params.get("title_template"),
        data=params["data"],
        serialized=dict(params.get("serialized") or {}),
        content_type_id=content_type.id,
        organisation_id=user.organisation_id,
        creator_id=user.id,
    )
    _execute(
        conn,
        "data_template",
        """
        INSERT INTO data_templates (id, title, title_template, data, serialized, content_type_id,
                                    organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            data_template.id,
            data_template.title,
            data_template.title_template,
            data_template.data,
            json.dumps(data_template.serialized),
            data_template.content_type_id,
            data_template.organisation_id,
            data_template.creator_id,
            _now(),
        ),
    )
    return data_template


def get_data_template(conn: sqlite3.Connection, data_template_id: str, organisation_id: str) -> Optional[DataTemplate]:
    row = conn.execute(
        "SELECT * FROM data_templates WHERE id = ? AND organisation_id = ?", (data_template_id, organisation_id)
    ).fetchone()
    if row is None:
        return None
    return DataTemplate(
        id=row["id"],
        title=row["title"],
        title_template=row["title_template"],
        data=row["data"],
        serialized=json.loads(row["serialized"] or "{}"),
        content_type_id=row["content_type_id"],
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
    )


# --- lookups ---------------------------------------------------------------

# entity kind -> (table, name column, scope column)
UNIQUENESS_SCOPES = {
    "theme": ("themes", "name", "organisation_id"),
    "layout": ("layouts", "name", "organisation_id"),
    "frame": ("frames", "name", "organisation_id"),
    "flow": ("flows", "name", "organisation_id"),
    "content_type": ("content_types", "name", "organisation_id"),
    "data_template": ("data_templates", "title", "creator_id"),
}


def name_exists(conn: sqlite3.Connection, kind: str, name: str, user: CurrentUser) -> bool:
    """
    Whether an entity of ``kind`` already uses ``name``.

    Data templates are unique per creator on their title; everything else is
    unique per organisation on its name.
    """
    table, column, scope = UNIQUENESS_SCOPES[kind]
    scope_value = user.id if scope == "creator_id" else user.organisation_id
    row = conn.execute(
        f"SELECT 1 FROM {table} WHERE {column} = ? AND {scope} = ? LIMIT 1", (name, scope_value)
    ).fetchone()
    return row is not None


def field_type_table(conn: sqlite3.Connection) -> Dict[str, str]:
    """Field type name -> id."""
    return {row["name"]: row["id"] for row in conn.execute("SELECT id, name FROM field_types")}


def engine_table(conn: sqlite3.Connection) -> Dict[str, str]:
    """Engine name -> id."""
    return {row["name"]: row["id"] for row in conn.execute("SELECT id, name FROM engines")}


def get_engine_name(conn: sqlite3.Connection, engine_id: Optional[str]) -> Optional[str]:
    if engine_id is None:
        return None
    row = conn.execute("SELECT name FROM engines WHERE id = ?", (engine_id,)).fetchone()
    return row["name"] if row else None


# --- template assets -------------------------------------------------------


@dataclass
class TemplateAsset:
    id: str
    name: str
    description: Optional[str]
    file_name: str
    file_size: int
    storage_key: str
    manifest: Dict[str, Any]
    file_entries: List[Dict[str, Any]]
    organisation_id: Optional[str]
    creator_id: Optional[str]
    inserted_at: str

    @property
    def is_public(self) -> bool:
        return self.organisation_id is None and self.creator_id is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _template_asset_from_row(row: sqlite3.Row) -> TemplateAsset:
    return TemplateAsset(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        storage_key=row["storage_key"],
        manifest=json.loads(row["manifest"] or "{}"),
        file_entries=json.loads(row["file_entries"] or "[]"),
        organisation_id=row["organisation_id"],
        creator_id=row["creator_id"],
        inserted_at=row["inserted_at"],
    )


def create_template_asset(
    conn: sqlite3.Connection, user: Optional[CurrentUser], params: Mapping[str, Any]
) -> TemplateAsset:
    """
    Insert a stored archive; ``params["id"]`` must match the storage key already used.

    Without a user the asset is public: it has no organisation or creator.
    """
    _require("template_asset", params, ("id", "name", "file_name", "storage_key"))
    template_asset = TemplateAsset(
        id=params["id"],
        name=params["name"],
        description=params.get("description"),
        file_name=params["file_name"],
        file_size=int(params.get("file_size") or 0),
        storage_key=params["storage_key"],
        manifest=dict(params.get("manifest") or {}),
        file_entries=list(params.get("file_entries") or []),
        organisation_id=user.organisation_id if user else None,
        creator_id=user.id if user else None,
        inserted_at=_now(),
    )
    _execute(
        conn,
        "template_asset",
        """
        INSERT INTO template_assets (id, name, description, file_name, file_size, storage_key, manifest,
                                     file_entries, organisation_id, creator_id, inserted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            template_asset.id,
            template_asset.name,
            template_asset.description,
            template_asset.file_name,
            template_asset.file_size,
            template_asset.storage_key,
            json.dumps(template_asset.manifest),
            json.dumps(template_asset.file_entries),
            template_asset.organisation_id,
            template_asset.creator_id,
            template_asset.inserted_at,
        ),
    )
    return template_asset


def get_template_asset(conn: sqlite3.Connection, template_asset_id: str, organisation_id: str) -> Optional[TemplateAsset]:
    row = conn.execute(
        "SELECT * FROM template_assets WHERE id = ? AND organisation_id = ?", (template_asset_id, organisation_id)
    ).fetchone()
    return _template_asset_from_row(row) if row else None


def list_template_assets(conn: sqlite3.Connection, organisation_id: str) -> List[TemplateAsset]:
    rows = conn.execute(
        "SELECT * FROM template_assets WHERE organisation_id = ? ORDER BY inserted_at DESC", (organisation_id,)
    ).fetchall()
    return [_template_asset_from_row(row) for row in rows]


def list_public_template_assets(conn: sqlite3.Connection) -> List[TemplateAsset]:
    rows = conn.execute(
        """
        SELECT * FROM template_assets
        WHERE organisation_id IS NULL AND creator_id IS NULL
        ORDER BY inserted_at DESC
        """
    ).fetchall()
    return [_template_asset_from_row(row) for row in rows]


def get_public_template_asset(conn: sqlite3.Connection, template_asset_id: str) -> Optional[TemplateAsset]:
    row = conn.execute(
        "SELECT * FROM template_assets WHERE id = ? AND organisation_id IS NULL AND creator_id IS NULL",
        (template_asset_id,),
    ).fetchone()
    return _template_asset_from_row(row) if row else None


def get_public_template_asset_by_key(conn: sqlite3.Connection, storage_key: str) -> Optional[TemplateAsset]:
    row = conn.execute(
        """
        SELECT * FROM template_assets
        WHERE storage_key = ? AND organisation_id IS NULL AND creator_id IS NULL
        """,
        (storage_key,),
    ).fetchone()
    return _template_asset_from_row(row) if row else None


def update_template_asset(
    conn: sqlite3.Connection, template_asset: TemplateAsset, params: Mapping[str, Any]
) -> TemplateAsset:
    """Rename or re-describe; the stored archive itself is immutable."""
    if "name" in params and _blank(params["name"]):
        raise EntityCreationFailed("template_asset", ["name: can't be blank"])
    template_asset.name = params.get("name") or template_asset.name
    if "description" in params:
        template_asset.description = params["description"]
    _execute(
        conn,
        "template_asset",
        "UPDATE template_assets SET name = ?, description = ? WHERE id = ?",
        (template_asset.name, template_asset.description, template_asset.id),
    )
    return template_asset


def delete_template_asset(conn: sqlite3.Connection, template_asset: TemplateAsset) -> None:
    conn.execute("DELETE FROM template_assets WHERE id = ?", (template_asset.id,))
