import math

import pytest

from mapedge.models.record import AirtableRecord
from mapedge.publishers import (
    PUBLISHERS,
    get_publisher,
    image_routes,
    network_feature,
    organization_feature,
    point_geometry,
)

from .conftest import org_record, record_id

POLYGON = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}


def _photo(n):
    return {"id": f"att{n}", "url": f"https://cdn.test/{n}.jpg", "thumbnails": {"large": {"url": f"https://cdn.test/{n}-l.jpg"}}}


def test_registry_object_keys():
    assert get_publisher("networks").object_key == "networks/latest.geojson"
    assert get_publisher("orgs").object_key == "orgs/organization_map.geojson"
    assert get_publisher("disaster-orgs").object_key == "disaster/org_points.geojson"
    assert get_publisher("disaster-resources").object_key == "disaster/resource_data.geojson"
    assert get_publisher("disaster-resources").cell_format == "string"
    assert get_publisher("unknown") is None
    assert set(PUBLISHERS) == {"networks", "orgs", "disaster-orgs", "disaster-resources"}


def test_image_routes_cover_network_attachment_fields():
    prefixes = {(p.slug, image.prefix, image.field_name) for p, image in image_routes()}
    assert prefixes == {("networks", "img", "Photo"), ("networks", "image", "Image")}


def test_organization_feature_strips_denomination():
    record = org_record(1, lat="35.5", lon=[-80.25], Denomination="Baptist (Southern Convention)")
    feature = organization_feature(record, "")
    assert feature["geometry"] == {"type": "Point", "coordinates": [-80.25, 35.5]}
    assert feature["properties"]["denomination"] == "Baptist"
    assert feature["properties"]["id"] == record_id(1)
    assert feature["properties"]["organization_name"] == "Org 1"


@pytest.mark.parametrize(
    "lat, lon",
    [(None, -80.0), (35.0, ""), ("north", -80.0), (math.inf, -80.0), (math.nan, -80.0), ([1, 2], -80.0)],
)
def test_records_without_coordinates_are_dropped(lat, lon):
    record = org_record(2, lat=lat, lon=lon)
    assert point_geometry(record) is None
    for slug in ("orgs", "disaster-orgs", "disaster-resources"):
        publisher = get_publisher(slug)
        assert publisher.to_features([record]) == []


def test_to_features_keeps_valid_records_in_order():
    records = [org_record(1), org_record(2, lat=None), org_record(3)]
    features = get_publisher("orgs").to_features(records)
    assert [f["properties"]["id"] for f in features] == [record_id(1), record_id(3)]


def test_disaster_resource_properties_are_flattened():
    record = org_record(
        4,
        **{
            "Organization Name": ["Relief Co", "Relief Co"],
            "Regular Services": ["Food", {"name": "Shelter"}],
            "Timestamp": "2024-05-01",
        },
    )
    props = get_publisher("disaster-resources").to_feature(record)["properties"]
    assert props["organization_name"] == "Relief Co"
    assert props["regular_services"] == "Food, Shelter"
    assert props["last_update"] == "2024-05-01"
    assert props["other_resources"] == ""


def test_network_feature_links_proxy_urls():
    record = AirtableRecord(
        id=record_id(9),
        fields={
            "Polygon": POLYGON,
            "Network Name": "North",
            "Network Leaders Names": ["Ann Lee", "recABCDEFGHIJKLMN"],
            "Contact Email": "north@example.org",
            "Photo": [_photo(n) for n in range(8)],
            "Image": [_photo(1)],
        },
    )
    props = network_feature(record, "https://maps.test")["properties"]
    assert props["name"] == "North"
    assert props["leaders"] == "Ann Lee"
    assert props["contact_email"] == "north@example.org"
    assert props["photo_count"] == 6
    assert props["photo1"] == f"https://maps.test/img/{record_id(9)}/0"
    assert props["photo6"] == f"https://maps.test/img/{record_id(9)}/5"
    assert props["image_count"] == 1
    assert props["image1"] == f"https://maps.test/image/{record_id(9)}/0"
    assert props["image2"] == ""
    assert props["number_of_churches"] == ""


def test_network_without_polygon_is_dropped():
    record = AirtableRecord(id=record_id(10), fields={"Polygon": "oops", "Network Name": "South"})
    assert network_feature(record, "") is None
