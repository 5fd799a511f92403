import hashlib
import json
import os

import jsonschema
import pandas as pd
import pytest
from click.testing import CliRunner

from locviz import main, ConfigResolver, ChartConfig, load_config_file, find_config_file

ELEMENT_SCHEMA = {
    "type": "object",
    "required": ["tag"],
    "properties": {
        "tag": {"type": "string"},
        "text": {"type": "string"},
        "attrs": {"type": "object"},
        "classes": {"type": "array", "items": {"type": "string"}},
        "style": {"type": "object"},
        "children": {"type": "array", "items": {"$ref": "#/definitions/element"}},
    },
}

DASHBOARD_SCHEMA = {
    "definitions": {"element": ELEMENT_SCHEMA},
    "type": "object",
    "required": [
        "schema_version", "progress", "max_time", "brush", "brush_state",
        "visible_commits", "selected_commits", "page",
    ],
    "properties": {
        "schema_version": {"type": "string"},
        "progress": {"type": "number", "minimum": 0, "maximum": 100},
        "max_time": {"type": ["string", "null"]},
        "brush": {
            "type": ["array", "null"],
            "items": {"type": "number"},
            "minItems": 4,
            "maxItems": 4,
        },
        "brush_state": {"enum": ["idle", "brushing"]},
        "visible_commits": {"type": "integer", "minimum": 0},
        "selected_commits": {"type": "array", "items": {"type": "string"}},
        "page": {
            "type": "object",
            "additionalProperties": {
                "allOf": [
                    {"$ref": "#/definitions/element"},
                    {"required": ["id", "hidden"]},
                ]
            },
        },
    },
}


def run(args):
    return CliRunner().invoke(main, args)


def read_json(path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def out_dir(tmp_path):
    return str(tmp_path / "out")


# ============================================================================
# END-TO-END EXPORT
# ============================================================================

def test_cli_exports_datasets(loc_csv, out_dir):
    result = run([loc_csv, "-o", out_dir, "--no-color"])
    assert result.exit_code == 0, result.output
    for name in ("dashboard.json", "commits.json", "stats.json", "manifest.json"):
        assert os.path.exists(os.path.join(out_dir, name))
    assert "Dashboard exported to" in result.output


def test_dashboard_json_matches_schema(loc_csv, out_dir):
    run([loc_csv, "-o", out_dir, "-q"])
    data = read_json(os.path.join(out_dir, "dashboard.json"))
    jsonschema.validate(instance=data, schema=DASHBOARD_SCHEMA)
    assert data["visible_commits"] == 3
    assert data["brush"] is None
    assert data["max_time"] == "2025-02-15T23:00:00-08:00"
    assert data["page"]["commit-tooltip"]["hidden"] is True


def test_manifest_checksums(loc_csv, out_dir):
    run([loc_csv, "-o", out_dir, "-q"])
    manifest = read_json(os.path.join(out_dir, "manifest.json"))
    assert manifest["total_records"] == 65
    assert manifest["total_commits"] == 3
    assert set(manifest["datasets"]) == {"dashboard", "commits", "stats"}

    entry = manifest["datasets"]["dashboard"]
    with open(os.path.join(out_dir, entry["file"]), "rb") as f:
        payload = f.read()
    assert entry["sha256"] == hashlib.sha256(payload).hexdigest()
    assert entry["file_size_bytes"] == len(payload)


def test_commits_json_omits_lines(loc_csv, out_dir):
    run([loc_csv, "-o", out_dir, "-q", "--repository-url", "https://github.com/example/portfolio"])
    commits = read_json(os.path.join(out_dir, "commits.json"))
    assert [c["id"] for c in commits] == ["aaa111", "bbb222", "ccc333"]
    assert all("lines" not in c and "_lines" not in c for c in commits)
    assert commits[1]["url"] == "https://github.com/example/portfolio/commit/bbb222"
    assert commits[1]["total_lines"] == 50


# ============================================================================
# INTERACTION REPLAY
# ============================================================================

def test_progress_zero_exports_empty_stats(loc_csv, out_dir):
    result = run([loc_csv, "-o", out_dir, "-q", "--progress", "0"])
    assert result.exit_code == 0
    stats = read_json(os.path.join(out_dir, "stats.json"))
    assert stats["total_loc"] == 0
    assert stats["most_productive_day"] == "N/A"
    assert read_json(os.path.join(out_dir, "dashboard.json"))["visible_commits"] == 0


def test_brush_selects_commits(loc_csv, out_dir):
    result = run([loc_csv, "-o", out_dir, "-q", "--brush", "1000,600,0,0"])
    assert result.exit_code == 0
    data = read_json(os.path.join(out_dir, "dashboard.json"))
    assert data["brush"] == [0, 0, 1000, 600]
    assert data["brush_state"] == "idle"
    assert data["selected_commits"] == ["aaa111", "bbb222", "ccc333"]
    assert data["page"]["selection-count"]["text"] == "3 commits selected"


@pytest.mark.parametrize("value", ["1,2,3", "a,b,c,d"])
def test_bad_brush_is_a_usage_error(loc_csv, out_dir, value):
    result = run([loc_csv, "-o", out_dir, "--brush", value])
    assert result.exit_code == 2
    assert not os.path.exists(out_dir)


def test_progress_out_of_range(loc_csv, out_dir):
    assert run([loc_csv, "-o", out_dir, "--progress", "120"]).exit_code == 2


def test_hover_opens_tooltip(loc_csv, out_dir):
    run([loc_csv, "-o", out_dir, "-q", "--hover", "bbb222"])
    tooltip = read_json(os.path.join(out_dir, "dashboard.json"))["page"]["commit-tooltip"]
    assert tooltip["hidden"] is False
    assert tooltip["children"][0]["text"] == "Commit"


def test_hover_on_hidden_commit_warns(loc_csv, out_dir):
    result = run([loc_csv, "-o", out_dir, "--no-color", "--progress", "50", "--hover", "ccc333"])
    assert result.exit_code == 0
    assert "Commit ccc333 is not visible at progress 50" in result.output


def test_panels_limit_containers(loc_csv, out_dir):
    result = run([loc_csv, "-o", out_dir, "-q", "--panels", "chart,stats"])
    assert result.exit_code == 0
    page = read_json(os.path.join(out_dir, "dashboard.json"))["page"]
    assert sorted(page) == ["chart", "stats"]


def test_unknown_panel_is_a_usage_error(loc_csv, out_dir):
    assert run([loc_csv, "-o", out_dir, "--panels", "chart,sidebar"]).exit_code == 2


# ============================================================================
# LOAD FAILURES
# ============================================================================

def test_malformed_row_aborts(tmp_path, sample_rows, out_dir):
    sample_rows[2]["line"] = "three"
    path = tmp_path / "bad.csv"
    pd.DataFrame(sample_rows).to_csv(path, index=False)

    result = run([str(path), "-o", out_dir, "--no-color"])
    assert result.exit_code == 1
    assert "Malformed record at row 3" in result.output
    assert not os.path.exists(os.path.join(out_dir, "dashboard.json"))


def test_missing_columns_abort(tmp_path, out_dir):
    path = tmp_path / "loc.csv"
    path.write_text("commit,file\nabc,a.py\n", encoding="utf-8")
    result = run([str(path), "-o", out_dir, "--no-color"])
    assert result.exit_code == 1
    assert "missing columns" in result.output


def test_missing_source(tmp_path):
    assert run([str(tmp_path / "nope.csv")]).exit_code == 2


# ============================================================================
# CONFIGURATION
# ============================================================================

def test_preset_compact(loc_csv, out_dir):
    run([loc_csv, "-o", out_dir, "-q", "--preset", "compact"])
    chart = read_json(os.path.join(out_dir, "dashboard.json"))["page"]["chart"]
    assert chart["children"][0]["attrs"]["viewBox"] == "0 0 600 400"


def test_config_file_sets_geometry(loc_csv, tmp_path, out_dir):
    config_file = tmp_path / "chart.yaml"
    config_file.write_text("width: 800\nradius-domain: filtered\n", encoding="utf-8")
    result = run([loc_csv, "-o", out_dir, "-q", "--config", str(config_file)])
    assert result.exit_code == 0
    chart = read_json(os.path.join(out_dir, "dashboard.json"))["page"]["chart"]
    assert chart["children"][0]["attrs"]["viewBox"] == "0 0 800 600"


def test_invalid_config_value(loc_csv, tmp_path, out_dir):
    config_file = tmp_path / "chart.json"
    config_file.write_text('{"radius_domain": "sometimes"}', encoding="utf-8")
    result = run([loc_csv, "-o", out_dir, "--no-color", "--config", str(config_file)])
    assert result.exit_code == 2
    assert "Invalid configuration" in result.output


def test_non_numeric_geometry_is_a_config_error(loc_csv, tmp_path, out_dir):
    config_file = tmp_path / "chart.yaml"
    config_file.write_text("width: wide\n", encoding="utf-8")
    result = run([loc_csv, "-o", out_dir, "--no-color", "--config", str(config_file)])
    assert result.exit_code == 2
    assert "width must be a number" in result.output
    assert not os.path.exists(out_dir)


def test_chart_config_coerces_numbers():
    config = ChartConfig(width="800", margin_left=20.0, radius_range=["2", 18])
    assert config.width == 800 and isinstance(config.width, int)
    assert config.radius_range == (2.0, 18.0)
    assert config.usable_area().width == 770


@pytest.mark.parametrize("overrides", [
    {"height": None},
    {"margin_top": [10]},
    {"tooltip_offset": True},
    {"base_opacity": "opaque"},
    {"radius_range": 5},
    {"radius_range": (1, 2, 3)},
    {"width": 20, "margin_left": 10, "margin_right": 10},
])
def test_chart_config_rejects_bad_values(overrides):
    with pytest.raises(ValueError):
        ChartConfig(**overrides)


def test_config_loading(tmp_path):
    j = tmp_path / "config.json"
    j.write_text('{"width": 640}', encoding="utf-8")
    assert load_config_file(str(j)) == {"width": 640}

    y = tmp_path / "config.yaml"
    y.write_text("", encoding="utf-8")
    assert load_config_file(str(y)) == {}

    with pytest.raises(FileNotFoundError):
        load_config_file(str(tmp_path / "nonexistent.json"))

    bad = tmp_path / "config.txt"
    bad.touch()
    with pytest.raises(ValueError):
        load_config_file(str(bad))


def test_config_resolver_precedence(tmp_path):
    source_dir = tmp_path / "data"
    source_dir.mkdir()
    (source_dir / ".locviz.yaml").write_text("width: 800\npreset: compact\n", encoding="utf-8")
    assert find_config_file(str(source_dir)) == str(source_dir / ".locviz.yaml")

    # auto-discovered file and the preset it names
    resolver = ConfigResolver({}, None, None, str(source_dir))
    assert resolver.get("width") == 800
    assert resolver.get("height") == 400
    assert resolver.get("margin_top", 10) == 10

    # CLI beats config file; None means "not given"
    resolver = ConfigResolver({"width": 700, "height": None}, None, "standard", str(source_dir))
    assert resolver.get("width") == 700
    assert resolver.get("height") is None

    config = ChartConfig.from_resolver(ConfigResolver({}, None, None, str(source_dir)))
    assert (config.width, config.height, config.radius_range) == (800, 400, (2, 18))
