from __future__ import annotations

import json

from consentgate.services.templates import (
    BLOCKED_SCRIPT_BODY,
    OUTPUT_EDGE_HANDLE,
    OUTPUT_ENDPOINT_URL,
    build_edge_filter_source,
    build_loader_script,
    build_stack_name,
    build_template,
    render_template_body,
)


def test_stack_name_is_sanitized_and_bounded() -> None:
    name = build_stack_name("consentgate", "User_42", "Shop.Example.COM", suffix="a1b2c3")
    assert name == "consentgate-user-42-shop-example-com-a1b2c3"
    long_name = build_stack_name("consentgate", "s" * 200, "example.com", suffix="ffffff")
    assert len(long_name) <= 128
    assert long_name.endswith("-ffffff")


def test_stack_name_is_deterministic_without_suffix() -> None:
    first = build_stack_name("consentgate", "subj", "example.com")
    second = build_stack_name("consentgate", "subj", "example.com")
    assert first == second == "consentgate-subj-example-com"


def test_template_is_pure_and_deterministic() -> None:
    first = render_template_body(build_template("shop.example.com"))
    second = render_template_body(build_template("shop.example.com"))
    assert first == second
    assert json.loads(first)["Outputs"].keys() >= {OUTPUT_ENDPOINT_URL, OUTPUT_EDGE_HANDLE}


def test_distribution_attaches_filter_at_viewer_request_and_forwards_cookies() -> None:
    template = build_template("shop.example.com")
    distribution = template["Resources"]["Distribution"]["Properties"]["DistributionConfig"]
    behavior = distribution["DefaultCacheBehavior"]
    associations = behavior["LambdaFunctionAssociations"]
    assert [item["EventType"] for item in associations] == ["viewer-request"]
    assert behavior["ForwardedValues"]["Cookies"]["Forward"] == "all"
    assert behavior["ForwardedValues"]["QueryString"] is True


def test_edge_filter_fails_open_and_blocks_without_consent() -> None:
    source = build_edge_filter_source("cg_consent")
    assert "cg_consent=1" in source
    assert "catch (err)" in source
    assert "return request;" in source.split("catch (err)")[1]
    assert "'403'" in source
    assert "no-store" in source
    assert BLOCKED_SCRIPT_BODY in source


def test_loader_script_points_at_endpoint() -> None:
    script = build_loader_script("https://d1.cloudfront.net", cookie_name="cg_consent")
    assert "https://d1.cloudfront.net" in script
    assert "__ENDPOINT_URL__" not in script
