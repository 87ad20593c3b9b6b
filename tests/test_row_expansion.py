from app.services.fingerprint import build_member_fingerprint, same_person_name
from app.services.row_expansion import canonicalize_row_keys, expand_row, expand_rows, split_lot_numbers


def _row(**overrides):
    row = {
        "소유자명": "홍길동",
        "연락처": "010-1234-5678",
        "법정동": "서울특별시 종로구 청운동",
        "지번": "123-4",
        "동": "101동",
        "호": "1001호",
        "토지지분": "1/2",
        "건물지분": "50%",
        "토지면적": "1,234.5",
        "비고": "",
    }
    row.update(overrides)
    return row


def test_korean_headers_map_to_row_fields():
    fields = canonicalize_row_keys({"소유자 명": "A", "건축물지분": "1/2", "unknown": "x", "dong": "101"})
    assert fields == {"owner_name": "A", "building_share_ratio": "1/2", "dong": "101"}


def test_expand_row_normalizes_fields():
    candidates, rejection = expand_row(_row(), 7)

    assert rejection is None
    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.row_number == 7
    assert candidate.property_address == "서울특별시 종로구 청운동 123-4"
    assert candidate.dong == "101"
    assert candidate.ho == "1001"
    assert candidate.phone == "01012345678"
    assert candidate.land_share_ratio == 50.0
    assert candidate.building_share_ratio == 50.0
    assert candidate.land_area == 1234.5
    assert candidate.notes is None


def test_multiple_lots_fan_out_one_candidate_each():
    candidates, rejection = expand_row(_row(지번="123-4, 산 12-3; 123-4、77번지"), 1)

    assert rejection is None
    assert [c.lot_number for c in candidates] == ["123-4", "산 12-3", "77번지"]
    assert {c.owner_name for c in candidates} == {"홍길동"}


def test_zero_ratio_is_absent_not_zero():
    candidates, _ = expand_row(_row(토지지분="0", 건물지분=""), 1)
    assert candidates[0].land_share_ratio is None
    assert candidates[0].building_share_ratio is None


def test_rejections_carry_a_reason():
    assert expand_row(_row(소유자명=" "), 3)[1].message() == "row 3 (-): missing owner name"
    assert expand_row(_row(지번=""), 4)[1].reason == "missing legal district or lot number"
    rejection = expand_row(_row(지번="123-4, 12가"), 5)[1]
    assert rejection.reason == "malformed lot number: 12가"


def test_expand_rows_keeps_order_and_collects_rejections():
    candidates, rejections = expand_rows([_row(), _row(지번="abc"), _row(소유자명="김철수", 지번="1, 2")])

    assert [c.row_number for c in candidates] == [1, 3, 3]
    assert [r.row_number for r in rejections] == [2]


def test_split_lot_numbers_dedupes():
    assert split_lot_numbers("1,1, 2") == ["1", "2"]
    assert split_lot_numbers(None) == []


def test_fingerprint_ignores_spacing_and_unit_suffixes():
    left = build_member_fingerprint(owner_name="홍 길동", property_address="청운동  123-4", dong="101동", ho="1001호")
    right = build_member_fingerprint(owner_name="홍길동", property_address="청운동 123-4", dong="101", ho="1001")
    assert left == right


def test_fingerprint_separates_units_of_the_same_owner():
    first = build_member_fingerprint(owner_name="홍길동", property_address="청운동 123-4", dong="101", ho="1001")
    second = build_member_fingerprint(owner_name="홍길동", property_address="청운동 123-4", dong="101", ho="1002")
    assert first != second


def test_same_person_name():
    assert same_person_name("홍 길동", "홍길동")
    assert not same_person_name("", "")
    assert not same_person_name("홍길동", "김철수")
