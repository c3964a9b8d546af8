from __future__ import annotations

from decimal import Decimal

import pytest

from app.booking.catalog import (
    COLUMBARIUM,
    GARDEN_GRIDS,
    LEGACY_LOTS,
    compare_and_set_coordinate,
    compare_and_set_status,
    coordinate_refs,
    find_resource,
    parse_resource_ref,
)
from app.booking.errors import NotFound, ValidationError
from app.core.extensions import db
from app.core.models import GardenACell, GardenCellType, Lot, ResourceStatus


def test_find_returns_uniform_resource_for_each_catalog(app):
    grave = find_resource(parse_resource_ref("garden:A-3-7"))
    lot = find_resource(parse_resource_ref("lot:A-15-23"))
    slot = find_resource(parse_resource_ref("columbarium:M2A0305"))

    assert (grave.status, grave.price) == (ResourceStatus.AVAILABLE, Decimal("5000.00"))
    assert lot.attributes["location"] == "Garden A, Row 15"
    assert slot.attributes["slot_type"] == "family"
    assert slot.attributes["level"] == "high"
    assert slot.price == Decimal("148500.00")


def test_find_unknown_resource_raises_not_found(app):
    with pytest.raises(NotFound):
        find_resource(parse_resource_ref("garden:A-40-40"))
    with pytest.raises(NotFound):
        find_resource(parse_resource_ref("lot:C-15-23"))


def test_garden_grid_does_not_expose_niches(app):
    niche = GardenACell.query.filter_by(cell_type=GardenCellType.NICHE).first()
    assert niche is not None
    graves = GARDEN_GRIDS["A"].list_resources()
    assert len(graves) == 32
    assert all(resource.attributes["feature_id"].startswith("A-G-") for resource in graves)


def test_compare_and_set_succeeds_once(app):
    ref = parse_resource_ref("garden:A-3-7")

    assert compare_and_set_status(ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED) is True
    assert compare_and_set_status(ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED) is False
    db.session.commit()

    assert find_resource(ref).status == ResourceStatus.RESERVED


def test_compare_and_set_ignores_stale_expectation(app):
    ref = parse_resource_ref("garden:A-1-1")

    assert compare_and_set_status(ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED) is False
    assert find_resource(ref).status == ResourceStatus.OCCUPIED


def test_compare_and_set_on_missing_resource_is_false(app):
    ref = parse_resource_ref("columbarium:M3B0909")
    assert compare_and_set_status(ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED) is False


def test_compare_and_set_targets_only_its_catalog(app):
    lot_ref = parse_resource_ref("lot:A-1-1")

    assert compare_and_set_status(lot_ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED) is True
    db.session.commit()

    assert Lot.query.filter_by(lot_code="A-1-1").one().status == ResourceStatus.RESERVED
    assert find_resource(parse_resource_ref("garden:A-1-1")).status == ResourceStatus.OCCUPIED


def test_catalog_listings(app):
    assert len(LEGACY_LOTS.list_resources()) == 25
    slots = COLUMBARIUM.list_resources()
    assert len(slots) == 90
    assert [slot.ref.code for slot in slots[:2]] == ["M1A0101", "M1A0102"]


def test_garden_catalog_rejects_codes_from_other_gardens(app):
    with pytest.raises(ValidationError):
        GARDEN_GRIDS["B"].find("A-3-7")


def test_coordinate_refs_list_every_row_of_a_grave(app):
    assert [str(ref) for ref in coordinate_refs(parse_resource_ref("garden:A-1-3"))] == ["lot:A-1-3", "garden:A-1-3"]
    assert [str(ref) for ref in coordinate_refs(parse_resource_ref("lot:A-1-3"))] == ["lot:A-1-3", "garden:A-1-3"]
    assert [str(ref) for ref in coordinate_refs(parse_resource_ref("garden:D-1-1"))] == ["garden:D-1-1"]
    assert [str(ref) for ref in coordinate_refs(parse_resource_ref("lot:A-15-23"))] == ["lot:A-15-23"]
    assert [str(ref) for ref in coordinate_refs(parse_resource_ref("columbarium:M2A0305"))] == ["columbarium:M2A0305"]


def test_compare_and_set_coordinate_needs_every_row(app):
    assert compare_and_set_coordinate(parse_resource_ref("lot:A-1-3"), ResourceStatus.AVAILABLE, ResourceStatus.RESERVED)
    assert find_resource(parse_resource_ref("garden:A-1-3")).status == ResourceStatus.RESERVED

    lot_a11 = parse_resource_ref("lot:A-1-1")
    assert not compare_and_set_coordinate(lot_a11, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED)
    db.session.rollback()
    assert find_resource(lot_a11).status == ResourceStatus.AVAILABLE
