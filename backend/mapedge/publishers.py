"""Published GeoJSON documents and how each one is built from its table.

A :class:`Publisher` names the source table and field list, the destination
object key, the record-to-feature converter and the attachment fields whose
images are proxied and cached.  Converters return ``None`` for records that
cannot be placed on a map; those records are dropped silently.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from mapedge.config import settings
from mapedge.models.record import AirtableRecord
from mapedge.services.attachments import collect_attachment_urls
from mapedge.services.normalize import (
    normalize_denomination,
    normalize_leaders,
    normalize_value,
    parse_geometry,
    to_number,
)

Feature = dict[str, Any]
Converter = Callable[[AirtableRecord, str], Optional[Feature]]


@dataclass(frozen=True)
class ImageField:
    """An attachment field served through ``/<prefix>/<recordId>/<index>``."""

    field_name: str
    prefix: str
    property_name: str


@dataclass(frozen=True)
class Publisher:
    slug: str
    table: str
    object_key: str
    converter: Converter
    fields: tuple[str, ...] = ()
    cell_format: Optional[str] = None
    image_fields: tuple[ImageField, ...] = field(default_factory=tuple)

    def to_feature(self, record: AirtableRecord, origin: str = "") -> Optional[Feature]:
        return self.converter(record, origin)

    def to_features(self, records: list[AirtableRecord], origin: str = "") -> list[Feature]:
        features = []
        for record in records:
            feature = self.converter(record, origin)
            if feature is not None:
                features.append(feature)
        return features


def point_geometry(record: AirtableRecord) -> Optional[dict]:
    lat = to_number(record.raw(settings.FIELD_LAT))
    lon = to_number(record.raw(settings.FIELD_LON))
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    return {"type": "Point", "coordinates": [lon, lat]}


def _feature(record: AirtableRecord, geometry: dict, properties: dict[str, Any]) -> Feature:
    return {"type": "Feature", "geometry": geometry, "properties": {"id": record.id, **properties}}


def _proxy_urls(record: AirtableRecord, image: ImageField, origin: str) -> list[str]:
    urls = collect_attachment_urls(record.raw(image.field_name))
    count = min(len(urls), settings.IMAGE_MAX_COUNT)
    return [f"{origin}/{image.prefix}/{record.id}/{idx}" for idx in range(count)]


NETWORK_IMAGES = (
    ImageField("Photo", "img", "photo"),
    ImageField("Image", "image", "image"),
)


def network_feature(record: AirtableRecord, origin: str) -> Optional[Feature]:
    geometry = parse_geometry(record.raw("Polygon"))
    if geometry is None:
        return None
    f = record.fields
    props: dict[str, Any] = {
        "name": f.get("Network Name") if f.get("Network Name") is not None else "",
        "leaders": normalize_leaders(f.get("Network Leaders Names")),
        "contact_email": normalize_value(
            f.get("contact email") if f.get("contact email") is not None else f.get("Contact Email")
        ),
        "status": normalize_value(f.get("Status")),
        "county": normalize_value(f.get("County")),
        "tags": normalize_value(f.get("Tags")),
        "number_of_churches": f.get("Number of Churches") if f.get("Number of Churches") is not None else "",
        "unify_lead": normalize_value(f.get("Unify Lead")),
    }
    for image in NETWORK_IMAGES:
        urls = _proxy_urls(record, image, origin)
        for idx in range(settings.IMAGE_MAX_COUNT):
            props[f"{image.property_name}{idx + 1}"] = urls[idx] if idx < len(urls) else ""
        props[f"{image.property_name}_count"] = len(urls)
    return _feature(record, geometry, props)


def organization_feature(record: AirtableRecord, origin: str) -> Optional[Feature]:
    geometry = point_geometry(record)
    if geometry is None:
        return None
    f = record.fields
    return _feature(record, geometry, {
        "organization_name": normalize_value(f.get("Org Name")),
        "website": normalize_value(f.get("Website")),
        "category": normalize_value(f.get("Category")),
        "denomination": normalize_denomination(f.get("Denomination")),
        "organization_type": normalize_value(f.get("Org Type")),
        "full_address": normalize_value(f.get("Address")),
        "county": normalize_value(f.get("County")),
        "network_name": normalize_value(f.get("Network Name")),
    })


_DISASTER_ORG_FIELDS = {
    "organization_name": "Organization Name",
    "website": "Website",
    "organization_type": "Organization Type",
    "full_address": "Full Address",
    "disaster_contact": "Disaster Contact",
    "disaster_email": "Disaster Email",
    "disaster_phone": "Disaster Phone",
    "regular_services": "Regular Services",
    "disaster_services": "Disaster Services",
    "physical_resources": "Physical Resources",
}

_RESOURCE_FIELDS = {
    "organization_name": "Organization Name",
    "website": "Website Address",
    "organization_type": "Organization Type",
    "full_address": "Organization Address",
    "org_size": "Size",
    "org_leader": "Organization Leader",
    "org_leader_email": "Org Leader Email",
    "org_leader_phone": "Org Leader Phone",
    "disaster_contact": "Disaster Contact",
    "disaster_email": "Disaster Email",
    "disaster_phone": "Disaster Phone",
    "compassion_leader": "Compassion Leader",
    "compassion_leader_email": "Compassion Email",
    "compassion_leader_phone": "Compassion Phone",
    "regular_services": "Regular Services",
    "disaster_services": "Disaster Services",
    "physical_resources": "Physical Resources",
    "other_resources": "Other Resources",
    "last_update": "Timestamp",
}


def mapped_point_converter(mapping: dict[str, str]) -> Converter:
    """Point feature whose properties are ``normalize_value`` of mapped columns."""

    def convert(record: AirtableRecord, origin: str) -> Optional[Feature]:
        geometry = point_geometry(record)
        if geometry is None:
            return None
        return _feature(record, geometry, {
            prop: normalize_value(record.raw(column)) for prop, column in mapping.items()
        })

    return convert


def build_publishers() -> dict[str, Publisher]:
    coords = (settings.FIELD_LAT, settings.FIELD_LON)
    publishers = [
        Publisher(
            slug="networks",
            table=settings.NETWORKS_TABLE_NAME,
            object_key="networks/latest.geojson",
            converter=network_feature,
            fields=(
                "Polygon", "Network Name", "Network Leaders Names", "contact email",
                "Contact Email", "Status", "County", "Tags", "Number of Churches",
                "Unify Lead", "Photo", "Image",
            ),
            image_fields=NETWORK_IMAGES,
        ),
        Publisher(
            slug="orgs",
            table=settings.ORG_TABLE_NAME,
            object_key=f"orgs/{settings.ORG_GEOJSON_FILE}",
            converter=organization_feature,
            fields=coords + (
                "Org Name", "Website", "Category", "Denomination", "Org Type",
                "Address", "County", "Network Name",
            ),
        ),
        Publisher(
            slug="disaster-orgs",
            table=settings.ORG_TABLE_NAME,
            object_key="disaster/org_points.geojson",
            converter=mapped_point_converter(_DISASTER_ORG_FIELDS),
            fields=coords + tuple(_DISASTER_ORG_FIELDS.values()),
        ),
        Publisher(
            slug="disaster-resources",
            table=settings.RESOURCE_TABLE_NAME,
            object_key="disaster/resource_data.geojson",
            converter=mapped_point_converter(_RESOURCE_FIELDS),
            fields=coords + tuple(_RESOURCE_FIELDS.values()),
            cell_format="string",
        ),
    ]
    return {p.slug: p for p in publishers}


PUBLISHERS: dict[str, Publisher] = build_publishers()


def get_publisher(slug: str) -> Optional[Publisher]:
    return PUBLISHERS.get(slug)


def image_routes() -> list[tuple[Publisher, ImageField]]:
    """Every (publisher, image field) pair that gets a proxy route."""
    return [(p, image) for p in PUBLISHERS.values() for image in p.image_fields]
