import asyncio
import json
import re
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import requests

from site_clone import (
    CloneResult,
    DownloadOutcome,
    FetchError,
    FileSystemError,
    HttpClient,
    Settings,
    bs4_parse,
    clone_page,
    download_all,
    local_path_for_asset,
    main,
    parse_args,
    settings_from_args,
    write_assets,
)
from tests.fakes import FakeSession, css_route, html_route

PNG = b"\x89PNG\r\n\x1a\nfake"
LOCAL_REF_RE = re.compile(r"assets/[A-Za-z0-9._/-]+")


class CloneTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def clone(self, url, routes, redirects=None, outdir="site"):
        fake = FakeSession(routes=routes, redirects=redirects)
        settings = Settings(output_root=self.root, outdir=outdir)
        result = asyncio.run(clone_page(url, settings, session=fake))
        return result, fake


class TestClonePage(CloneTestCase):
    def test_single_image(self):
        routes = {
            "https://x.test/p": html_route('<html><head></head><body><img src="/a.png"></body></html>'),
            "https://x.test/a.png": (200, PNG, "image/png"),
        }
        with self.assertLogs(level="INFO") as cm:
            result, fake = self.clone("https://x.test/p", routes)

        local = local_path_for_asset("https://x.test/a.png", "image/png")
        self.assertTrue(local.startswith("assets/img/a-"))
        self.assertTrue(local.endswith(".png"))

        out = result.output_dir
        self.assertEqual(out, self.root / "site")
        self.assertEqual((out / local).read_bytes(), PNG)
        index = (out / "index.html").read_text(encoding="utf-8")
        self.assertEqual(bs4_parse(index).find("img")["src"], local)
        self.assertIn("style.css", index)
        self.assertTrue((out / "style.css").exists())
        self.assertEqual((result.assets_total, result.assets_ok, result.assets_failed), (1, 1, 0))
        self.assertTrue(fake.closed)

        steps = [json.loads(r.getMessage())["step"] for r in cm.records]
        self.assertEqual(
            steps,
            ["START", "TOOL", "OBSERVE", "TOOL", "OBSERVE", "THINK", "TOOL", "OBSERVE", "OUTPUT"],
        )

    def test_same_url_in_two_attributes_downloads_once(self):
        routes = {
            "https://x.test/": html_route('<img src="/a.png" data-src="/a.png">'),
            "https://x.test/a.png": (200, PNG, "image/png"),
        }
        result, fake = self.clone("https://x.test/", routes)
        self.assertEqual(fake.calls.count("https://x.test/a.png"), 1)
        img = bs4_parse((result.output_dir / "index.html").read_text(encoding="utf-8")).find("img")
        self.assertEqual(img["src"], img["data-src"])
        self.assertTrue(img["src"].startswith("assets/img/"))
        self.assertEqual(len(list((result.output_dir / "assets" / "img").iterdir())), 1)

    def test_missing_stylesheet_is_commented(self):
        routes = {
            "https://x.test/": html_route(
                '<html><head><link rel="stylesheet" href="/missing.css"></head><body></body></html>'
            ),
        }
        result, _ = self.clone("https://x.test/", routes)
        css = (result.output_dir / "style.css").read_text(encoding="utf-8")
        self.assertIn("/* Failed CSS https://x.test/missing.css", css)
        soup = bs4_parse((result.output_dir / "index.html").read_text(encoding="utf-8"))
        self.assertEqual([l["href"] for l in soup.find_all("link")], ["style.css"])

    def test_second_run_gets_suffixed_folder(self):
        routes = {"https://x.test/": html_route("<p>hi</p>")}
        first, _ = self.clone("https://x.test/", routes, outdir="name")
        second, _ = self.clone("https://x.test/", routes, outdir="name")
        self.assertEqual(first.output_dir.name, "name")
        self.assertEqual(second.output_dir.name, "name-1")

    def test_default_folder_from_host(self):
        routes = {"https://www.example.com/": html_route("<p>hi</p>")}
        result, _ = self.clone("www.example.com", routes, outdir=None)
        self.assertEqual(result.output_dir, self.root / "example")

    def test_local_references_all_exist(self):
        routes = {
            "https://x.test/": html_route(
                "<html><head>"
                '<link rel="stylesheet" href="/css/site.css">'
                "<style>.hero{background:url(/img/hero.jpg)}</style>"
                "</head><body>"
                '<img src="/old.png">'
                '<img src="/gone.png">'
                '<script src="/js/app.js"></script>'
                "</body></html>"
            ),
            "https://x.test/css/site.css": css_route(
                "@font-face{src:url(../fonts/f.woff2)}\nbody{background:url(bg.png)}"
            ),
            "https://x.test/fonts/f.woff2": (200, b"wOF2", "font/woff2"),
            "https://x.test/css/bg.png": (200, PNG, "image/png"),
            "https://x.test/img/hero.jpg": (200, b"jpg", "image/jpeg"),
            "https://cdn.test/new.png": (200, PNG, "image/png"),
            "https://x.test/js/app.js": (200, b"console.log(1)", "application/javascript"),
        }
        redirects = {"https://x.test/old.png": "https://cdn.test/new.png"}
        result, _ = self.clone("https://x.test/", routes, redirects=redirects)
        out = result.output_dir

        index = (out / "index.html").read_text(encoding="utf-8")
        css = (out / "style.css").read_text(encoding="utf-8")
        refs = LOCAL_REF_RE.findall(index) + LOCAL_REF_RE.findall(css)
        self.assertTrue(refs)
        for ref in refs:
            with self.subTest(ref=ref):
                self.assertTrue((out / ref).is_file())

        srcs = [img["src"] for img in bs4_parse(index).find_all("img")]
        self.assertTrue(srcs[0].startswith("assets/img/new-"))
        self.assertEqual(srcs[1], "/gone.png")
        self.assertIn("assets/fonts/", css)
        self.assertIn("assets/img/hero-", css)
        self.assertIn("assets/js/app-", index)
        self.assertEqual((result.assets_ok, result.assets_failed), (5, 1))

    def test_non_html_entry_is_flagged(self):
        routes = {"https://x.test/": (200, "<p>plain</p>", "text/plain")}
        with self.assertLogs(level="WARNING") as cm:
            result, _ = self.clone("https://x.test/", routes)
        self.assertIn("is text/plain", cm.output[0])
        self.assertTrue((result.output_dir / "index.html").exists())

    def test_html_entry_is_not_flagged(self):
        routes = {"https://x.test/": html_route("<p>hi</p>")}
        with patch("site_clone.logging.warning") as warn:
            self.clone("https://x.test/", routes)
        warn.assert_not_called()

    def test_fetch_failure_leaves_no_folder(self):
        with self.assertRaises(FetchError):
            self.clone("https://x.test/", {})
        self.assertFalse((self.root / "site").exists())

    def test_unwritable_root(self):
        blocker = self.root / "blocker"
        blocker.write_text("not a directory")
        fake = FakeSession(routes={"https://x.test/": html_route("<p>hi</p>")})
        settings = Settings(output_root=blocker, outdir="site")
        with self.assertRaises(FileSystemError):
            asyncio.run(clone_page("https://x.test/", settings, session=fake))


class TestDownloads(unittest.TestCase):
    def test_order_preserved_and_failures_isolated(self):
        fake = FakeSession(
            routes={
                "https://x.test/1.png": (200, b"1", "image/png"),
                "https://x.test/3.png": (200, b"3", "image/png"),
                "https://x.test/4.png": requests.ConnectionError("reset"),
            }
        )
        client = HttpClient(Settings(), session=fake)
        urls = [
            "https://x.test/1.png",
            "https://x.test/2.png",
            "https://x.test/3.png",
            "https://x.test/4.png",
        ]
        outcomes = asyncio.run(download_all(urls, client, limit=2))
        self.assertEqual([o.requested_url for o in outcomes], urls)
        self.assertEqual([o.success for o in outcomes], [True, False, True, False])
        self.assertEqual(outcomes[2].data, b"3")
        self.assertIn("404", outcomes[1].error)

    def test_empty(self):
        client = HttpClient(Settings(), session=FakeSession())
        self.assertEqual(asyncio.run(download_all([], client)), [])

    def test_write_assets_counts_and_dedupes(self):
        same = dict(success=True, final_url="https://x.test/a.png", content_type="image/png", data=PNG)
        outcomes = [
            DownloadOutcome(requested_url="https://x.test/a.png", **same),
            DownloadOutcome(requested_url="https://x.test/alias.png", **same),
            DownloadOutcome(requested_url="https://x.test/b.png", success=False, error="boom"),
        ]
        with tempfile.TemporaryDirectory() as tmp:
            ok, fail = asyncio.run(write_assets(Path(tmp), outcomes))
            self.assertEqual((ok, fail), (2, 1))
            files = [p for p in Path(tmp).rglob("*") if p.is_file()]
            self.assertEqual(len(files), 1)


class TestCli(unittest.TestCase):
    def test_invalid_url_exits_1(self):
        with self.assertRaises(SystemExit) as cm:
            main(["not a host"])
        self.assertEqual(cm.exception.code, 1)

    def test_fetch_failure_exits_1(self):
        with patch("site_clone.run_clone", side_effect=FetchError("boom")):
            with self.assertRaises(SystemExit) as cm:
                main(["https://x.test/"])
        self.assertEqual(cm.exception.code, 1)

    def test_success_returns_normally(self):
        result = CloneResult(Path("x"), "https://x.test/", 0, 0, 0, 0, 0)
        with patch("site_clone.run_clone", return_value=result) as run:
            main(["https://x.test/", "--outdir", "out", "--concurrency", "3"])
        settings = run.call_args.args[1]
        self.assertEqual(settings.outdir, "out")
        self.assertEqual(settings.concurrency, 3)

    def test_toml_config_with_cli_override(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = Path(tmp) / "clone.toml"
            cfg.write_text(
                '[clone]\noutdir = "mirror"\nconcurrency = 3\ntimeout = 5000\nua = "Bot/1"\n',
                encoding="utf-8",
            )
            args = parse_args(["--config", str(cfg), "--concurrency", "5", "x.test"])
        settings = settings_from_args(args)
        self.assertEqual(settings.outdir, "mirror")
        self.assertEqual(settings.concurrency, 5)
        self.assertEqual(settings.timeout_ms, 5000)
        self.assertEqual(settings.user_agent, "Bot/1")

    def test_yaml_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = Path(tmp) / "clone.yaml"
            cfg.write_text("outdir: from-yaml\ntimeout: 1000\n", encoding="utf-8")
            args = parse_args(["--config", str(cfg), "x.test"])
        self.assertEqual(args.outdir, "from-yaml")
        self.assertEqual(settings_from_args(args).timeout_ms, 1000)


if __name__ == "__main__":
    unittest.main()
