"""Unit tests for the generate/refine dispatcher and output path handling."""
# pylint: disable=missing-function-docstring

import tempfile
import unittest
from pathlib import Path

from diagram_generator import dispatcher as dsp
from diagram_generator.core import PNG_SIGNATURE, GenerationError, ImageResult
from diagram_generator.session import SESSION_TTL_SECONDS, SessionStore

PNG = PNG_SIGNATURE + b"imagedata"
CLEAR_PROMPT = "Compare latency: 450ms before vs 120ms after"


class FakeGenerator:
    """Records calls and returns a fixed PNG (or raises)."""

    def __init__(self, buffer: bytes = PNG, fail: Exception = None):
        self.buffer = buffer
        self.fail = fail
        self.calls = []

    def generate(self, prompt, *, aspect_ratio, size):
        self.calls.append({"prompt": prompt, "aspect_ratio": aspect_ratio, "size": size})
        if self.fail:
            raise self.fail
        return ImageResult(buffer=self.buffer, mime_type="image/png", response={})


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class PathHelperTests(unittest.TestCase):
    """Filename derivation and sanitization."""

    def test_slug_from_prompt(self):
        self.assertEqual(dsp.slug_from_prompt("Compare latency: 450ms before vs after"),
                         "compare_latency_450ms")
        self.assertEqual(dsp.slug_from_prompt("a b c"), "image")

    def test_sanitize_strips_directories_and_odd_characters(self):
        self.assertEqual(dsp.sanitize_filename("../../etc/pass wd"), "pass_wd.png")
        self.assertEqual(dsp.sanitize_filename("C:\\temp\\chart.PNG"), "chart.png")

    def test_sanitize_empty_name(self):
        name = dsp.sanitize_filename("../")
        self.assertRegex(name, r"^image_[0-9a-f]{8}\.png$")

    def test_sanitize_caps_length(self):
        name = dsp.sanitize_filename("x" * 400)
        self.assertLessEqual(len(name), dsp.MAX_FILENAME_LENGTH)
        self.assertTrue(name.endswith(".png"))

    def test_refined_path_is_new_sibling(self):
        refined = dsp.refined_output_path(Path("/out/chart.png"))
        self.assertEqual(refined.parent, Path("/out"))
        self.assertRegex(refined.name, r"^chart_refined_[0-9a-f]{8}\.png$")

    def test_download_path_rejects_traversal(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            for bad in ("", ".", "..", "../secret.png", "/etc/passwd", "a/b.png", "..\\x.png"):
                with self.assertRaises(ValueError):
                    dsp.resolve_download_path(root, bad)
            self.assertEqual(dsp.resolve_download_path(root, "ok.png"), (root / "ok.png").resolve())


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.out = Path(self._tmp.name).resolve()
        self.generator = FakeGenerator()

    def tearDown(self):
        self._tmp.cleanup()

    def http_dispatcher(self, **kwargs):
        options = dsp.DispatcherOptions(
            output_dir=self.out,
            public_base_url="https://diagrams.example.com",
            allow_absolute_output=False,
            allow_subdirs_in_output=False,
            download_auth_hint=True,
        )
        return dsp.ToolDispatcher(options, kwargs.pop("generator", self.generator), **kwargs)

    def stdio_dispatcher(self):
        return dsp.ToolDispatcher(dsp.DispatcherOptions(output_dir=self.out), self.generator)


class GenerateImageTests(DispatcherTestCase):
    """generate_image behaviour."""

    async def test_clear_prompt_generates_and_records_session(self):
        dispatcher = self.stdio_dispatcher()
        outcome = await dispatcher.generate_image(CLEAR_PROMPT)

        self.assertIsInstance(outcome, dsp.GenerationOutcome)
        self.assertEqual(outcome.output_path.read_bytes(), PNG)
        self.assertEqual(outcome.output_path.parent, self.out)
        self.assertEqual(outcome.summary_lines()[0], "Generated comparison (16:9, 2K)")
        self.assertEqual(self.generator.calls[0]["aspect_ratio"], "16:9")
        self.assertIn(CLEAR_PROMPT, self.generator.calls[0]["prompt"])

        session = dispatcher.last_session
        self.assertEqual(session.prompt, CLEAR_PROMPT)
        self.assertEqual(session.output_path, outcome.output_path)
        self.assertEqual(session.diagram_type, "comparison")

    async def test_ambiguous_prompt_asks_without_side_effects(self):
        dispatcher = self.stdio_dispatcher()
        result = await dispatcher.generate_image("Create a nice visual for my presentation")

        self.assertIsInstance(result, dsp.Clarification)
        self.assertIn("What type would you prefer?", result.question)
        self.assertEqual(self.generator.calls, [])
        self.assertIsNone(dispatcher.last_session)
        self.assertEqual(list(self.out.iterdir()), [])

    async def test_explicit_type_skips_clarification(self):
        dispatcher = self.stdio_dispatcher()
        outcome = await dispatcher.generate_image(
            "Create a nice visual for my presentation", diagram_type="hero"
        )
        self.assertEqual(outcome.diagram_type, "hero")
        self.assertEqual(outcome.aspect_ratio, "2:1")
        self.assertEqual(outcome.size, "4K")

    async def test_empty_prompt_rejected(self):
        with self.assertRaises(ValueError):
            await self.stdio_dispatcher().generate_image("   ")

    async def test_failure_leaves_session_unchanged(self):
        dispatcher = self.stdio_dispatcher()
        first = await dispatcher.generate_image(CLEAR_PROMPT)
        self.generator.fail = GenerationError("API error 500: boom")

        with self.assertRaises(GenerationError):
            await dispatcher.generate_image("Roadmap timeline with quarterly milestones and phases")
        self.assertEqual(dispatcher.last_session.output_path, first.output_path)

    async def test_invalid_png_is_an_error(self):
        dispatcher = self.stdio_dispatcher()
        self.generator.buffer = b"not a png at all"
        with self.assertRaises(GenerationError):
            await dispatcher.generate_image(CLEAR_PROMPT)
        self.assertIsNone(dispatcher.last_session)

    async def test_stdio_honours_absolute_and_nested_paths(self):
        dispatcher = self.stdio_dispatcher()
        absolute = self.out / "abs" / "diagram.png"
        outcome = await dispatcher.generate_image(CLEAR_PROMPT, output=str(absolute))
        self.assertEqual(outcome.output_path, absolute.resolve())

        nested = await dispatcher.generate_image(CLEAR_PROMPT, output="sub/dir/chart")
        self.assertEqual(nested.output_path, (self.out / "sub" / "dir" / "chart.png").resolve())

    async def test_http_flattens_requested_paths(self):
        dispatcher = self.http_dispatcher()
        outcome = await dispatcher.generate_image(CLEAR_PROMPT, output="../../etc/evil name")
        self.assertEqual(outcome.output_path, (self.out / "evil_name.png").resolve())

        absolute = await dispatcher.generate_image(CLEAR_PROMPT, output="/etc/passwd")
        self.assertEqual(absolute.output_path.parent, self.out)

    async def test_http_download_link_and_auth_note(self):
        dispatcher = self.http_dispatcher()
        outcome = await dispatcher.generate_image(CLEAR_PROMPT, output="latency")
        lines = outcome.summary_lines()
        self.assertIn("Download: https://diagrams.example.com/files/latency.png", lines)
        self.assertTrue(any(line.startswith("Note: download requires") for line in lines))

    async def test_medium_confidence_note(self):
        dispatcher = self.stdio_dispatcher()
        outcome = await dispatcher.generate_image("Our CI pipeline: build -> test -> deploy")
        self.assertTrue(outcome.summary_lines()[-1].startswith("Note: Detected: flow (medium confidence)"))
        self.assertTrue(outcome.summary_lines()[-1].endswith("Use 'type' parameter to override."))


class RefineImageTests(DispatcherTestCase):
    """refine_image behaviour."""

    async def test_refine_without_session(self):
        with self.assertRaises(dsp.NoPriorSessionError) as ctx:
            await self.stdio_dispatcher().refine_image("make it blue")
        self.assertEqual(str(ctx.exception), "No previous image to refine. Use generate_image first.")
        self.assertEqual(self.generator.calls, [])

    async def test_refine_inherits_and_writes_sibling(self):
        dispatcher = self.stdio_dispatcher()
        first = await dispatcher.generate_image(CLEAR_PROMPT, size="4K")
        refined = await dispatcher.refine_image("use green for the after bar")

        self.assertTrue(refined.refined)
        self.assertEqual(refined.summary_lines()[0], f"Refined image saved: {refined.output_path}")
        self.assertNotEqual(refined.output_path, first.output_path)
        self.assertEqual(refined.output_path.parent, first.output_path.parent)
        self.assertTrue(first.output_path.exists())
        self.assertEqual((refined.diagram_type, refined.aspect_ratio, refined.size),
                         ("comparison", "16:9", "4K"))

        call = self.generator.calls[-1]
        self.assertEqual((call["aspect_ratio"], call["size"]), ("16:9", "4K"))
        self.assertIn("REFINEMENT REQUEST:\nuse green for the after bar", call["prompt"])

        session = dispatcher.last_session
        self.assertEqual(session.output_path, refined.output_path)
        self.assertEqual(session.prompt, f"{CLEAR_PROMPT}\n\nRefinement: use green for the after bar")

    async def test_refinements_chain(self):
        dispatcher = self.stdio_dispatcher()
        await dispatcher.generate_image(CLEAR_PROMPT)
        await dispatcher.refine_image("one")
        await dispatcher.refine_image("two")
        self.assertTrue(dispatcher.last_session.prompt.endswith("Refinement: one\n\nRefinement: two"))

    async def test_refine_failure_keeps_previous_session(self):
        dispatcher = self.stdio_dispatcher()
        first = await dispatcher.generate_image(CLEAR_PROMPT)
        self.generator.fail = GenerationError("Network error")
        with self.assertRaises(GenerationError):
            await dispatcher.refine_image("thicker arrows")
        self.assertEqual(dispatcher.last_session.output_path, first.output_path)

    async def test_expired_session_cannot_be_refined(self):
        clock = FakeClock()
        dispatcher = self.http_dispatcher(store=SessionStore(clock=clock))
        await dispatcher.generate_image(CLEAR_PROMPT)
        clock.now += SESSION_TTL_SECONDS + 1
        with self.assertRaises(dsp.NoPriorSessionError):
            await dispatcher.refine_image("make it blue")

    async def test_dispatchers_do_not_share_state(self):
        first = self.http_dispatcher()
        second = self.http_dispatcher()
        await first.generate_image(CLEAR_PROMPT)
        with self.assertRaises(dsp.NoPriorSessionError):
            await second.refine_image("make it blue")

    async def test_close_drops_session(self):
        dispatcher = self.stdio_dispatcher()
        await dispatcher.generate_image(CLEAR_PROMPT)
        dispatcher.close()
        self.assertIsNone(dispatcher.last_session)


if __name__ == "__main__":
    unittest.main()
