#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for page rendering and site output.

This script validates:
- nginx redirect rules for single-patch tickets
- The uplift table, its row states and filtering
- Escaping of commit and bug text
- Link pages, locale pages and web portal pages
- File placement inside the site directory
"""

import logging
import re
import sys
import tempfile
from pathlib import Path

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

try:
    from torpatches import (
        DEFAULT_URLS,
        PageRenderer,
        compress_css,
        is_page_name,
        maps_to_table_rows,
        now_string,
        redirect_file_content,
        redirect_line,
        table_rows_to_html,
    )
except ImportError as e:
    print(f"ERROR: Failed to import from torpatches.py: {e}")
    print("Make sure torpatches.py is in the same directory as this test script.")
    sys.exit(1)


logger = logging.getLogger("torpatches.test")

ROWS = [
    {
        "hash": "aaa111",
        "title": "Bug 1001: Isolate cache",
        "id": "1001",
        "bugzilla": [{"id": 501, "summary": "Isolate cache (Tor 1001)", "resolution": "FIXED", "flags": []}],
        "trac": {"summary": "Isolate cache", "keywords": ["ff60-esr"], "status": "closed"},
    },
    {
        "hash": "bbb222",
        "title": "Bug 2002: <script>alert(1)</script>",
        "id": "2002",
        "bugzilla": [],
        "trac": None,
    },
    {
        "hash": "ccc333",
        "title": "Bug 3003: Letterboxing",
        "id": "3003",
        "bugzilla": [
            {"id": 601, "summary": "Letterbox", "resolution": "", "priority": "P2", "flags": ["+", "?"],
             "hg": [{"node": "0123456789abcdef", "desc": "Bug 601 - landed"}]},
            {"id": 602, "summary": "Letterbox 2", "resolution": "", "priority": "--", "flags": []},
        ],
        "trac": {"summary": "Letterboxing", "keywords": ["tbb-fingerprinting"], "status": "new"},
    },
    {
        "hash": "ddd444",
        "title": "TB7: mobile only",
        "id": "TB7",
        "bugzilla": [],
        "trac": None,
    },
]


def make_renderer(site_dir, **output):
    config = {"output": dict({"site_dir": str(site_dir)}, **output)}
    return PageRenderer(config, logger)


def test_redirects():
    """Test nginx redirect rules."""
    print("Testing redirect rules...")

    commits = [{"hash": "abc123", "message": "Bug 1234: x"}]
    assert redirect_line("1234", commits) == (
        "location /1234 { rewrite ^ https://gitweb.torproject.org/tor-browser.git/patch/?id=abc123; }\n"
    )

    content = redirect_file_content({"1234": commits, "TB5": [{"hash": "def456", "message": "TB5"}]})
    lines = content.splitlines()
    assert lines[0] == "location /uplift { rewrite ^ / ; }", "Legacy /uplift rule comes first"
    assert lines[1].startswith("location /1234 ")
    assert lines[2] == f"location /TB5 {{ rewrite ^ {DEFAULT_URLS['patch_base']}def456; }}"
    assert content.endswith("\n")

    assert redirect_file_content({}) == "location /uplift { rewrite ^ / ; }\n"

    print("  ✅ Redirect rules are generated correctly")


def test_helpers():
    """Test small rendering helpers."""
    print("Testing rendering helpers...")

    assert compress_css("a {\n  color: red;\n}\n") == "a { color: red; }"
    assert re.fullmatch(r"\d{4}-[A-Z][a-z]{2}-\d{2} \d{2}:\d{2} UTC", now_string())

    rows = maps_to_table_rows(["a", "b"], [{"a": 1, "b": "<x>"}, {"a": 2}])
    assert rows == [[1, "<x>"], [2, None]]
    table = table_rows_to_html(["a", "b"], "locale", rows)
    assert table.startswith('<table class="locale"><tr class="header"><th>a</th><th>b</th></tr>')
    assert "<td>&lt;x&gt;</td>" in table
    assert "<td></td>" in table, "None renders as an empty cell"

    print("  ✅ Rendering helpers work correctly")


def test_uplift_table_filtering():
    """Test that only open rows appear unless completed rows are requested."""
    print("Testing uplift table filtering...")

    renderer = make_renderer("site")

    open_table = renderer.uplift_table(ROWS, show_completed=False)
    assert '<tr class="unfiled">' in open_table
    assert '<tr class="unresolved">' in open_table
    assert '<tr class="resolved">' not in open_table
    assert '<tr class="no-uplift">' not in open_table
    assert "aaa111" not in open_table
    assert "ddd444" not in open_table

    full_table = renderer.uplift_table(ROWS, show_completed=True)
    for state in ("resolved", "unfiled", "unresolved", "no-uplift"):
        assert f'<tr class="{state}">' in full_table, f"Missing {state} row"
    assert full_table.index("aaa111") < full_table.index("bbb222") < full_table.index("ccc333")

    print("  ✅ Uplift table filtering works correctly")


def test_uplift_table_content():
    """Test the cells of an uplift row."""
    print("Testing uplift table content...")

    renderer = make_renderer("site")
    table = renderer.uplift_table(ROWS, show_completed=True)

    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in table, "Commit titles are escaped"
    assert "<script>" not in table
    assert 'href="https://trac.torproject.org/3003"' in table
    assert 'href="https://gitweb.torproject.org/tor-browser.git/patch/?id=ccc333"' in table
    assert "<p>tbb-fingerprinting</p>" in table

    bug_html = renderer.bugzilla_list_html(ROWS[2]["bugzilla"])
    assert 'class="unresolved"' in bug_html
    assert 'href="https://bugzilla.mozilla.org/601"' in bug_html
    assert "601</a> (P2) [r+,r?]" in bug_html, "Open bugs show priority and review flags"
    assert "602</a> </p>" in bug_html, "Unset priority is not shown"
    assert 'href="https://hg.mozilla.org/mozilla-central/rev/0123456789abcdef">01234567</a>' in bug_html

    fixed_html = renderer.bugzilla_list_html(ROWS[0]["bugzilla"])
    assert 'class="resolved"' in fixed_html
    assert "(" not in fixed_html.split("</a>")[1], "Fixed bugs hide their priority"

    assert renderer.hg_patch_list_html(None) == ""

    print("  ✅ Uplift table content is correct")


def test_write_patch_pages():
    """Test writing the uplift pages, redirect file and link pages."""
    print("Testing patch page output...")

    with tempfile.TemporaryDirectory() as temp_dir:
        site_dir = Path(temp_dir) / "site"
        renderer = make_renderer(
            site_dir,
            uplift_page="index.html",
            uplift_all_page="all.html",
            redirect_file="nginx/redirects.txt",
        )

        written = renderer.write_uplift_pages(ROWS)
        assert written == [site_dir / "index.html", site_dir / "all.html"]
        index_html = (site_dir / "index.html").read_text(encoding="utf-8")
        all_html = (site_dir / "all.html").read_text(encoding="utf-8")
        assert index_html.startswith("<!DOCTYPE html>")
        assert "<style type=\"text/css\">" in index_html
        assert "Tor Browser patches for uplift" in index_html
        assert "ccc333" in index_html and "aaa111" not in index_html
        assert "aaa111" in all_html

        single = {"2002": [{"hash": "bbb222", "message": "Bug 2002: x"}]}
        path = renderer.write_redirect_file(single)
        assert path == site_dir / "nginx" / "redirects.txt", "Relative paths land in the site dir"
        assert "location /2002 " in path.read_text(encoding="utf-8")

        absolute = Path(temp_dir) / "etc" / "redirects.txt"
        renderer = make_renderer(site_dir, redirect_file=str(absolute))
        assert renderer.write_redirect_file(single) == absolute

        commits = [
            {"hash": "aaa111", "message": "Bug 1001: Isolate cache"},
            {"hash": "eee555", "message": "Bug 1001: fixup & tests"},
        ]
        page_path = renderer.write_indirect_page("1001", commits)
        assert page_path == site_dir / "1001"
        page = page_path.read_text(encoding="utf-8")
        assert "<title>Patches for Tor Browser Bug #1001</title>" in page
        assert page.count("<li>") == 2
        assert "fixup &amp; tests" in page
        assert "Last update:" in page

    print("  ✅ Patch pages are written correctly")


def test_unusable_ticket_ids():
    """Test that ticket ids which cannot name a page are skipped."""
    print("Testing unusable ticket ids...")

    for ticket in ("1234", "21240.1", "TB42", "None", "5-a"):
        assert is_page_name(ticket), f"{ticket!r} should name a page"
    for ticket in (".", "..", "...", "", "1/2", "a b", None):
        assert not is_page_name(ticket), f"{ticket!r} should not name a page"

    dots = [{"hash": "fff666", "message": "Fix a bug .. in prefs"}]
    content = redirect_file_content({"..": dots, "5": [{"hash": "abc123", "message": "Bug 5"}]})
    assert "location /.. " not in content
    assert "location /5 " in content

    with tempfile.TemporaryDirectory() as temp_dir:
        site_dir = Path(temp_dir) / "site"
        renderer = make_renderer(site_dir)
        commits = dots + [{"hash": "ggg777", "message": "Another bug .. in prefs"}]

        assert renderer.write_indirect_page("..", commits) is None
        assert renderer.write_indirect_page(".", commits) is None
        assert list(Path(temp_dir).iterdir()) == [], "Nothing is written for unusable ids"

        path = renderer.write_indirect_page("777", commits)
        assert path == site_dir / "777"
        assert "Patches for Tor Browser Bug #777" in path.read_text(encoding="utf-8")

    print("  ✅ Unusable ticket ids are skipped")


def test_show_completed_config():
    """Test that the configured flag controls the main uplift page."""
    print("Testing show_completed configuration...")

    with tempfile.TemporaryDirectory() as temp_dir:
        config = {
            "output": {"site_dir": temp_dir, "uplift_page": "uplift.html"},
            "uplift": {"show_completed": True},
        }
        renderer = PageRenderer(config, logger)
        written = renderer.write_uplift_pages(ROWS)
        assert written == [Path(temp_dir) / "uplift.html"], "No second page unless configured"
        assert "aaa111" in written[0].read_text(encoding="utf-8")

    print("  ✅ show_completed configuration is honored")


def test_stylesheet_override():
    """Test replacing the built-in stylesheet from a file."""
    print("Testing stylesheet override...")

    with tempfile.TemporaryDirectory() as temp_dir:
        css_path = Path(temp_dir) / "uplift.css"
        css_path.write_text("tr.unfiled {\n  color: purple;\n}\n", encoding="utf-8")
        config = {"output": {"site_dir": temp_dir, "css": {"uplift": str(css_path)}}}
        renderer = PageRenderer(config, logger)
        assert "tr.unfiled { color: purple; }" in renderer.uplift_page(ROWS, False)

        config = {"output": {"site_dir": temp_dir, "css": {"uplift": str(css_path) + ".missing"}}}
        renderer = PageRenderer(config, logger)
        assert "tr.unfiled { background-color: #fdd; }" in renderer.uplift_page(ROWS, False)

    print("  ✅ Stylesheet override works correctly")


def test_locale_pages():
    """Test the Tor Browser locale page and web portal pages."""
    print("Testing locale pages...")

    data = {
        "resources": ["abouttor-homepage", "torbutton-branddtd"],
        "current": ["de", "fr"],
        "new": ["ga"],
        "gb_total": 1.5,
        "gb_single": 0.25,
        "progress": [
            {"locale": "fr", "locale_name": "French", "tbb_deployed": "yes", "firefox": "yes",
             "translated_entities": 10, "untranslated_entities": 0, "reviewed": 2,
             "translated_words": 100, "untranslated_words": 0},
            {"locale": "ga", "locale_name": None, "tbb_deployed": "no", "firefox": "yes",
             "translated_entities": 20, "untranslated_entities": 1, "reviewed": 0,
             "translated_words": 150, "untranslated_words": 5},
        ],
    }

    with tempfile.TemporaryDirectory() as temp_dir:
        renderer = make_renderer(temp_dir, locale_page="locales")
        path = renderer.write_tbb_locale_page(data)
        assert path == Path(temp_dir) / "locales"
        page = path.read_text(encoding="utf-8")

        assert "Monitoring Tor Browser locales" in page
        assert "<p>de, fr</p>" in page
        assert "<p>ga</p>" in page
        assert "1.50 GB" in page and "0.25 GB" in page
        assert "abouttor-homepage<br>torbutton-branddtd" in page
        assert page.index("<td>ga</td>") < page.index("<td>fr</td>"), "Most translated first"

        stats = {
            "fr": {"completed": "80%", "translated_entities": 8},
            "ga": {"completed": "10%", "translated_entities": 1},
        }
        path = renderer.write_web_portal_page("support.torproject.org", stats, "support-locales")
        page = path.read_text(encoding="utf-8")
        assert path == Path(temp_dir) / "support-locales"
        assert "<h1>Monitoring support.torproject.org locales</h1>" in page
        assert page.count("<td>fr</td>") == 2, "fr appears in both tables"
        assert page.count("<td>ga</td>") == 1, "ga is not a tier 1 language"

    print("  ✅ Locale pages are written correctly")


def run_all_tests():
    """Run all rendering tests."""
    print("🧪 Running rendering tests")
    print("-" * 60)

    tests = [
        test_redirects,
        test_helpers,
        test_uplift_table_filtering,
        test_uplift_table_content,
        test_write_patch_pages,
        test_unusable_ticket_ids,
        test_show_completed_config,
        test_stylesheet_override,
        test_locale_pages,
    ]

    passed = 0
    failed = 0

    for test_func in tests:
        try:
            test_func()
            passed += 1
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1
            import traceback
            traceback.print_exc()

    print("-" * 60)
    print(f"📊 Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
