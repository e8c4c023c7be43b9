import logging

from config import (DEFAULT_SERVICES, ServiceConfig, parse_admin_ids,
                    parse_flag, parse_positive_int, parse_services)


def test_parse_services_default():
    services = parse_services(DEFAULT_SERVICES)

    assert services == [
        ServiceConfig(key="viewers", service_id="24044", quantity=1000, max_price=10000.0),
        ServiceConfig(key="upvotes", service_id="24047", quantity=100, max_price=150000.0),
    ]


def test_parse_services_skips_invalid_and_duplicate_items():
    services = parse_services("a:1:10:5, broken, b:2:x:5, a:3:10:5, c:4:0:5, d:5:20:7.5")

    assert [(s.key, s.service_id) for s in services] == [("a", "1"), ("d", "5")]
    assert services[1].max_price == 7.5


def test_parse_services_falls_back_to_default():
    assert parse_services("") == parse_services(DEFAULT_SERVICES)
    assert parse_services(None) == parse_services(DEFAULT_SERVICES)


def test_parse_admin_ids():
    assert parse_admin_ids(" 1, 2 ,,3") == ["1", "2", "3"]
    assert parse_admin_ids(None) == []


def test_parse_flag():
    assert parse_flag("true") is True
    assert parse_flag("YES") is True
    assert parse_flag("0") is False
    assert parse_flag(None) is False
    assert parse_flag("", default=True) is True


def test_parse_positive_int():
    assert parse_positive_int("5", 3) == 5
    assert parse_positive_int("0", 3) == 3
    assert parse_positive_int("-2", 3) == 3
    assert parse_positive_int("abc", 3) == 3
    assert parse_positive_int(None, 3) == 3


def test_malformed_services_fall_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="config"):
        services = parse_services("viewers;24044;1000")

    assert services == parse_services(DEFAULT_SERVICES)
    assert "SMM_SERVICES has no valid item" in caplog.text


def test_unset_services_fall_back_quietly(caplog):
    with caplog.at_level(logging.WARNING, logger="config"):
        parse_services(None)

    assert caplog.text == ""
