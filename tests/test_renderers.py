from prompt.renderers import (
    fence_language,
    render_call_example,
    render_system_message,
    render_table,
    render_template,
)


def test_fence_language_maps_formats():
    assert fence_language("OpenAPI") == "json"
    assert fence_language(" openapi-yaml ") == "yaml"
    assert fence_language("wsdl") == "xml"
    assert fence_language("unknown") == ""
    assert fence_language("") == ""


def test_render_table():
    table = render_table(["a", "b"], [["1", "2"], ["3", "4"]])
    assert table.splitlines() == ["a | b", "--- | ---", "1 | 2", "3 | 4"]


def test_render_system_message_embeds_spec_and_example():
    message = render_system_message(
        driver_id="weather-1",
        target="wx",
        protocol="rest",
        transport="http",
        spec_format="openapi-yaml",
        content="paths: {}",
    )

    assert '"weather-1" driver (rest over http)' in message
    assert "```yaml\npaths: {}\n```" in message
    assert '"target": "wx"' in message
    assert message == render_system_message(
        driver_id="weather-1",
        target="wx",
        protocol="rest",
        transport="http",
        spec_format="openapi-yaml",
        content="paths: {}",
    )


def test_render_template_leaves_unknown_placeholders():
    text = render_template(
        "{model}: {spec} via {target} {unknown}",
        content="S",
        driver_id="d",
        target="t",
        model_hint=None,
    )
    assert text == ": S via t {unknown}"
    assert render_call_example("wx").startswith("```json\n")
