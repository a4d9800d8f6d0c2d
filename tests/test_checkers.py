# SPDX-FileCopyrightText: 2023-present ferstar <zhangjianfei3@gmail.com>
#
# SPDX-License-Identifier: MIT
import json
import subprocess
from unittest.mock import patch

import httpx
import pytest

from package_detector import (
    BundlephobiaRateLimitError,
    DetectorConfig,
    Finding,
    NpmCommandError,
    OutdatedPackage,
    Reporter,
    SizeThresholds,
    classify_size,
    detect_duplicate_packages,
    detect_duplicate_packages_from_lockfile,
    detect_heavy_packages,
    detect_outdated_packages,
    execute_npm_command,
    find_duplicate_versions,
    find_duplicates_in_lockfile,
    format_size,
    get_bundlephobia_info,
    get_outdated_severity,
    get_size_recommendations,
    parse_npm_ls,
    parse_npm_outdated,
    parse_npm_outdated_json,
)

NPM_OUTDATED_TABLE = """\
Package  Current  Wanted  Latest  Location
react     17.0.2  17.0.2  18.2.0  node_modules/react
lodash   4.17.20 4.17.21 4.17.21  node_modules/lodash
"""

NPM_LS_TREE = """\
demo@1.0.0 /work/demo
├─┬ express@4.18.2
│ ├── debug@2.6.9
│ └─┬ send@0.18.0
│   └── debug@2.6.9 deduped
├─┬ @babel/core@7.22.0
│ └── debug@4.3.4
└─┬ @scope/tool@1.0.0
  ├── @babel/core@7.20.0
  └── debug@3.2.7
"""


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=["npm"], returncode=returncode, stdout=stdout, stderr=stderr)


def bundlephobia_client(sizes, status_codes=None):
    """Serve gzip sizes per package name, or a bare status code."""
    status_codes = status_codes or {}
    requested = []

    def handler(request):
        name = request.url.params["package"]
        requested.append(name)
        if name in status_codes:
            return httpx.Response(status_codes[name])
        gzip = sizes[name]
        return httpx.Response(200, json={"name": name, "version": "1.0.0", "size": gzip * 3, "gzip": gzip})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return client, requested


class TestNpmCommand:
    """Test the npm subprocess wrapper."""

    @patch("package_detector.subprocess.run")
    def test_returns_stdout_even_on_non_zero_exit(self, mock_run):
        mock_run.return_value = completed('{"react": {}}', returncode=1)

        assert execute_npm_command(["outdated", "--json"]) == '{"react": {}}'

    @patch("package_detector.subprocess.run")
    def test_failure_without_output(self, mock_run):
        mock_run.return_value = completed(returncode=254, stderr="npm ERR! missing script")

        with pytest.raises(NpmCommandError, match="npm ERR! missing script"):
            execute_npm_command(["ls"])

    @patch("package_detector.subprocess.run", side_effect=FileNotFoundError("npm"))
    def test_missing_npm_binary(self, _mock_run):
        with pytest.raises(NpmCommandError, match="npm command failed"):
            execute_npm_command(["ls"])


class TestOutdatedParsing:
    """Test parsing of npm outdated output."""

    def test_text_table(self):
        assert parse_npm_outdated(NPM_OUTDATED_TABLE) == [
            OutdatedPackage("react", "17.0.2", "17.0.2", "18.2.0", "node_modules/react"),
            OutdatedPackage("lodash", "4.17.20", "4.17.21", "4.17.21", "node_modules/lodash"),
        ]

    def test_short_rows_are_skipped(self):
        assert parse_npm_outdated("Package Current\nreact 17.0.2 18.2.0\n") == []

    def test_json_report(self):
        output = json.dumps(
            {
                "react": {"current": "17.0.2", "wanted": "17.0.2", "latest": "18.2.0", "location": "node_modules/react"},
                "left-pad": [{"wanted": "1.3.0", "latest": "1.3.0"}],
            },
        )

        assert parse_npm_outdated_json(output) == [
            OutdatedPackage("react", "17.0.2", "17.0.2", "18.2.0", "node_modules/react"),
            OutdatedPackage("left-pad", "missing", "1.3.0", "1.3.0", "unknown"),
        ]

    def test_json_report_must_be_an_object(self):
        with pytest.raises(ValueError, match="unexpected"):
            parse_npm_outdated_json("[]")

    @pytest.mark.parametrize("entry", ['"1.0.0"', "[null]", "3"])
    def test_json_entries_must_be_objects(self, entry):
        with pytest.raises(ValueError, match="unexpected npm outdated entry for react"):
            parse_npm_outdated_json(f'{{"react": {entry}}}')

    @pytest.mark.parametrize(
        ("current", "latest", "expected"),
        [
            ("17.0.2", "18.2.0", "high"),
            ("4.16.0", "4.17.21", "medium"),
            ("4.17.20", "4.17.21", "low"),
            ("missing", "1.0.0", "medium"),
        ],
    )
    def test_severity(self, current, latest, expected):
        assert get_outdated_severity(current, latest) == expected


class TestDetectOutdatedPackages:
    """Test the outdated package detector."""

    @patch("package_detector.subprocess.run")
    def test_reports_json_findings(self, mock_run, make_project, capsys):
        project_dir = make_project({"react": "^17.0.0", "left-pad": "^1.0.0"})
        mock_run.return_value = completed(
            json.dumps({"react": {"current": "17.0.2", "wanted": "17.0.2", "latest": "18.2.0"}}),
            returncode=1,
        )
        reporter = Reporter()

        findings = detect_outdated_packages(reporter, DetectorConfig(project_dir=project_dir))

        assert len(findings) == 1
        assert findings[0].package_name == "react"
        assert findings[0].message == "Current: 17.0.2, Latest: 18.2.0"
        assert findings[0].severity == "high"
        assert reporter.get_findings() == findings
        assert mock_run.call_args.args[0][1:] == ["outdated", "--json"]
        assert mock_run.call_args.kwargs["cwd"] == project_dir
        assert "Found 1 outdated packages" in capsys.readouterr().out

    @patch("package_detector.subprocess.run")
    def test_falls_back_to_text_table(self, mock_run, make_project):
        project_dir = make_project({"react": "^17.0.0", "lodash": "^4.0.0"})
        mock_run.side_effect = [completed("npm WARN something"), completed(NPM_OUTDATED_TABLE, returncode=1)]

        findings = detect_outdated_packages(Reporter(), DetectorConfig(project_dir=project_dir))

        assert [f.package_name for f in findings] == ["react", "lodash"]
        assert [f.severity for f in findings] == ["high", "low"]

    @patch("package_detector.subprocess.run")
    def test_up_to_date(self, mock_run, make_project, capsys):
        project_dir = make_project({"react": "^18.0.0"})
        mock_run.return_value = completed("")

        assert detect_outdated_packages(Reporter(), DetectorConfig(project_dir=project_dir)) == []
        assert "All packages are up to date" in capsys.readouterr().out

    @patch("package_detector.subprocess.run")
    def test_ignored_packages_are_skipped(self, mock_run, make_project):
        project_dir = make_project({"react": "^17.0.0"})
        mock_run.return_value = completed(json.dumps({"react": {"current": "17.0.2", "latest": "18.2.0"}}))

        config = DetectorConfig(project_dir=project_dir, ignore={"react"})

        assert detect_outdated_packages(Reporter(), config) == []

    @patch("package_detector.subprocess.run")
    def test_npm_failure_is_reported(self, mock_run, make_project, capsys):
        project_dir = make_project({"react": "^17.0.0"})
        mock_run.return_value = completed(returncode=1, stderr="network down")
        reporter = Reporter()

        assert detect_outdated_packages(reporter, DetectorConfig(project_dir=project_dir)) == []
        assert reporter.get_findings() == []
        assert "Error: Failed to detect outdated packages: npm command failed: network down" in capsys.readouterr().out

    @patch("package_detector.subprocess.run")
    def test_skips_npm_without_dependencies(self, mock_run, make_project):
        project_dir = make_project()

        assert detect_outdated_packages(Reporter(), DetectorConfig(project_dir=project_dir)) == []
        mock_run.assert_not_called()


class TestDuplicateDetection:
    """Test duplicate version detection from npm ls and package-lock.json."""

    def test_parse_npm_ls(self):
        packages = parse_npm_ls(NPM_LS_TREE)

        assert ("express", "4.18.2") in packages
        assert ("@babel/core", "7.22.0") in packages
        assert ("@scope/tool", "1.0.0") in packages
        # The root line has no tree prefix
        assert ("demo", "1.0.0") not in packages

    def test_find_duplicate_versions(self):
        duplicates = find_duplicate_versions(parse_npm_ls(NPM_LS_TREE))

        assert duplicates == {
            "debug": ["2.6.9", "4.3.4", "3.2.7"],
            "@babel/core": ["7.22.0", "7.20.0"],
        }

    @patch("package_detector.subprocess.run")
    def test_detect_from_npm_ls(self, mock_run, make_project):
        project_dir = make_project({"express": "^4.0.0"})
        mock_run.return_value = completed(NPM_LS_TREE, returncode=1)

        findings = detect_duplicate_packages(Reporter(), DetectorConfig(project_dir=project_dir))

        by_name = {f.package_name: f for f in findings}
        assert by_name["debug"].severity == "high"
        assert by_name["debug"].message == "Multiple versions: 2.6.9, 4.3.4, 3.2.7"
        assert by_name["@babel/core"].severity == "medium"
        assert by_name["@babel/core"].metadata == {"versions": ["7.22.0", "7.20.0"], "count": 2}
        assert mock_run.call_args.args[0][1:] == ["ls", "--all"]

    def test_lockfile_v2_packages(self):
        lock_data = {
            "lockfileVersion": 3,
            "packages": {
                "": {"name": "demo", "version": "1.0.0"},
                "packages/workspace-a": {"name": "workspace-a", "version": "0.1.0"},
                "node_modules/debug": {"version": "4.3.4"},
                "node_modules/send/node_modules/debug": {"version": "2.6.9"},
                "node_modules/@babel/core": {"version": "7.22.0"},
                "node_modules/@scope/tool/node_modules/@babel/core": {"version": "7.20.0"},
                "node_modules/ms": {"version": "2.1.3"},
                "node_modules/link": {"resolved": "packages/workspace-a", "link": True},
            },
        }

        assert find_duplicates_in_lockfile(lock_data) == {
            "debug": ["4.3.4", "2.6.9"],
            "@babel/core": ["7.22.0", "7.20.0"],
        }

    def test_lockfile_v1_dependencies(self):
        lock_data = {
            "lockfileVersion": 1,
            "dependencies": {
                "debug": {"version": "4.3.4"},
                "send": {"version": "0.18.0", "dependencies": {"debug": {"version": "2.6.9"}}},
            },
        }

        assert find_duplicates_in_lockfile(lock_data) == {"debug": ["4.3.4", "2.6.9"]}

    def test_detect_from_lockfile(self, make_project):
        project_dir = make_project({"send": "^0.18.0"})
        (project_dir / "package-lock.json").write_text(
            json.dumps(
                {
                    "packages": {
                        "node_modules/debug": {"version": "4.3.4"},
                        "node_modules/send/node_modules/debug": {"version": "2.6.9"},
                    },
                },
            ),
        )

        findings = detect_duplicate_packages_from_lockfile(Reporter(), DetectorConfig(project_dir=project_dir))

        assert len(findings) == 1
        assert findings[0].message == "Multiple versions in lockfile: 4.3.4, 2.6.9"
        assert findings[0].metadata["source"] == "package-lock.json"

    def test_missing_lockfile_warns(self, make_project, capsys):
        project_dir = make_project({"send": "^0.18.0"})

        assert detect_duplicate_packages_from_lockfile(Reporter(), DetectorConfig(project_dir=project_dir)) == []
        assert "Warning: package-lock.json not found" in capsys.readouterr().out


class TestSizeHelpers:
    """Test size formatting and thresholds."""

    @pytest.mark.parametrize(
        ("size", "expected"),
        [
            (0, "0 B"),
            (512, "512 B"),
            (1536, "1.5 KB"),
            (50 * 1024, "50 KB"),
            (3 * 1024 * 1024, "3 MB"),
        ],
    )
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_classify_size(self):
        thresholds = SizeThresholds()

        assert classify_size(10 * 1024, thresholds) is None
        assert classify_size(60 * 1024, thresholds) == ("low", "Medium package: 60 KB (gzipped)")
        assert classify_size(200 * 1024, thresholds) == ("medium", "Large package: 200 KB (gzipped)")
        assert classify_size(600 * 1024, thresholds) == ("high", "Very large package: 600 KB (gzipped)")

    def test_recommendations(self):
        thresholds = SizeThresholds()

        assert get_size_recommendations(60 * 1024, thresholds) == []
        assert "Consider tree-shaking to reduce bundle size" in get_size_recommendations(200 * 1024, thresholds)
        assert "Consider using a lighter alternative" in get_size_recommendations(600 * 1024, thresholds)
        assert get_size_recommendations(2048, SizeThresholds(small=512, medium=1024, large=4096)) == [
            "Consider tree-shaking to reduce bundle size",
            "Check if you can use dynamic imports for this package",
        ]


class TestBundlephobia:
    """Test Bundlephobia lookups over a mocked transport."""

    def test_parses_response(self):
        client, requested = bundlephobia_client({"react": 2048})

        info = get_bundlephobia_info(client, "react")

        assert info.name == "react"
        assert info.gzip == 2048
        assert info.size == 6144
        assert requested == ["react"]

    def test_unknown_package(self):
        client, _requested = bundlephobia_client({}, {"private-pkg": 404})

        assert get_bundlephobia_info(client, "private-pkg") is None

    def test_rate_limit(self):
        client, _requested = bundlephobia_client({}, {"react": 429})

        with pytest.raises(BundlephobiaRateLimitError):
            get_bundlephobia_info(client, "react")

    def test_server_error(self):
        client, _requested = bundlephobia_client({}, {"react": 500})

        with pytest.raises(httpx.HTTPStatusError):
            get_bundlephobia_info(client, "react")

    @pytest.mark.parametrize("payload", [[1, 2], "oops"])
    def test_non_object_response(self, payload):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)))

        with pytest.raises(ValueError, match="unexpected Bundlephobia response"):
            get_bundlephobia_info(client, "react")


class TestDetectHeavyPackages:
    """Test the heavy package detector."""

    def test_reports_packages_over_threshold(self, make_project, capsys):
        project_dir = make_project({"moment": "^2", "left-pad": "^1", "lodash": "^4", "three": "^0.150"})
        client, requested = bundlephobia_client(
            {"moment": 120 * 1024, "left-pad": 1024, "lodash": 70 * 1024, "three": 600 * 1024},
        )
        config = DetectorConfig(project_dir=project_dir, heavy_batch_size=2, heavy_batch_delay=0)

        findings = detect_heavy_packages(Reporter(), config, client)

        assert {f.package_name: f.severity for f in findings} == {"moment": "medium", "lodash": "low", "three": "high"}
        assert sorted(requested) == ["left-pad", "lodash", "moment", "three"]
        assert "Found 3 heavy packages" in capsys.readouterr().out

    def test_skips_packages_already_reported_unused(self, make_project):
        project_dir = make_project({"moment": "^2", "left-pad": "^1"})
        client, requested = bundlephobia_client({"moment": 120 * 1024})
        reporter = Reporter()
        reporter.add_finding(Finding("unused", "left-pad", "Not imported anywhere in the project"))

        findings = detect_heavy_packages(reporter, DetectorConfig(project_dir=project_dir, heavy_batch_delay=0), client)

        assert requested == ["moment"]
        assert [f.package_name for f in findings] == ["moment"]

    def test_failed_lookups_warn_and_continue(self, make_project, capsys):
        project_dir = make_project({"moment": "^2", "react": "^18", "private-pkg": "^1"})
        client, _requested = bundlephobia_client({"moment": 120 * 1024}, {"react": 429, "private-pkg": 404})

        findings = detect_heavy_packages(Reporter(), DetectorConfig(project_dir=project_dir, heavy_batch_delay=0), client)

        assert [f.package_name for f in findings] == ["moment"]
        assert "Warning: Could not check size for react: Rate limited by Bundlephobia API" in capsys.readouterr().out

    def test_malformed_response_warns_and_continues(self, make_project, capsys):
        project_dir = make_project({"react": "^18", "moment": "^2"})

        def handler(request):
            if request.url.params["package"] == "react":
                return httpx.Response(200, json=["not", "an", "object"])
            return httpx.Response(200, json={"name": "moment", "version": "2.29.4", "size": 1, "gzip": 120 * 1024})

        client = httpx.Client(transport=httpx.MockTransport(handler))

        findings = detect_heavy_packages(Reporter(), DetectorConfig(project_dir=project_dir, heavy_batch_delay=0), client)

        assert [f.package_name for f in findings] == ["moment"]
        assert "Warning: Could not check size for react: unexpected Bundlephobia response" in capsys.readouterr().out

    def test_recommendations_are_attached_and_printed(self, make_project, capsys):
        project_dir = make_project({"three": "^0.150", "lodash": "^4"})
        client, _requested = bundlephobia_client({"three": 600 * 1024, "lodash": 70 * 1024})
        reporter = Reporter()

        findings = detect_heavy_packages(reporter, DetectorConfig(project_dir=project_dir, heavy_batch_delay=0), client)

        by_name = {f.package_name: f for f in findings}
        assert by_name["three"].metadata["recommendations"] == [
            "Consider using a lighter alternative",
            "Check if you need the full package or just specific modules",
        ]
        assert by_name["lodash"].metadata["recommendations"] == []

        reporter.print_results()
        assert "      Consider using a lighter alternative" in capsys.readouterr().out

    def test_custom_thresholds(self, make_project):
        project_dir = make_project({"left-pad": "^1"})
        client, _requested = bundlephobia_client({"left-pad": 2048})
        config = DetectorConfig(
            project_dir=project_dir,
            heavy_thresholds=SizeThresholds(small=1024, medium=4096, large=8192),
            heavy_batch_delay=0,
        )

        findings = detect_heavy_packages(Reporter(), config, client)

        assert findings[0].message == "Medium package: 2 KB (gzipped)"

    @patch("package_detector.time.sleep")
    def test_delay_between_batches(self, mock_sleep, make_project):
        project_dir = make_project({"a": "1", "b": "1", "c": "1"})
        client, _requested = bundlephobia_client({"a": 1, "b": 1, "c": 1})
        config = DetectorConfig(project_dir=project_dir, heavy_batch_size=2, heavy_batch_delay=0.5)

        assert detect_heavy_packages(Reporter(), config, client) == []

        mock_sleep.assert_called_once_with(0.5)

    def test_missing_manifest(self, tmp_path, capsys):
        assert detect_heavy_packages(Reporter(), DetectorConfig(project_dir=tmp_path)) == []
        assert "Failed to detect heavy packages" in capsys.readouterr().out
