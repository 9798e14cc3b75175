from __future__ import annotations

import unittest

from blaze_backend.tags import (
    GT_SUBSTITUTE,
    LT_SUBSTITUTE,
    extract_actionable_tags,
    neutralize_attribute_brackets,
    parse_directives,
    parse_response,
    render_tag,
)
from blaze_backend.types import Directive, DirectiveKind, Prose

STREAMED_RESPONSE = (
    "Adding the counter component.\n"
    '<blaze-write path="src/Counter.tsx" description="Add &quot;counter&quot; component">\n'
    "```tsx\n"
    "export function Counter() {\n"
    "  return <button>+1</button>;\n"
    "}\n"
    "```\n"
    "</blaze-write>\n"
    '<blaze-search-replace path="src/App.tsx" description="Mount it">\n'
    "<<<<<<< SEARCH\n"
    "<main></main>\n"
    "=======\n"
    "<main><Counter /></main>\n"
    ">>>>>>> REPLACE\n"
    "</blaze-search-replace>\n"
    '<blaze-rename from="src/old.ts" to="src/lib/old.ts"></blaze-rename>\n'
    '<blaze-delete path="src/unused.ts"></blaze-delete>\n'
    '<blaze-add-dependency packages="clsx zustand"></blaze-add-dependency>\n'
    "<blaze-chat-summary>Add counter</blaze-chat-summary>\n"
    "Done."
)


class DirectiveParserTests(unittest.TestCase):
    def test_parses_all_directive_kinds_in_order(self) -> None:
        directives = parse_directives(STREAMED_RESPONSE)

        self.assertEqual(
            [d.kind for d in directives],
            [
                DirectiveKind.WRITE,
                DirectiveKind.SEARCH_REPLACE,
                DirectiveKind.RENAME,
                DirectiveKind.DELETE,
                DirectiveKind.ADD_DEPENDENCY,
                DirectiveKind.SUMMARY,
            ],
        )
        self.assertTrue(all(d.complete for d in directives))

        write = directives[0]
        self.assertEqual(write.args["path"], "src/Counter.tsx")
        self.assertEqual(write.args["description"], 'Add "counter" component')
        self.assertEqual(
            write.args["content"],
            "export function Counter() {\n  return <button>+1</button>;\n}",
        )

        edit = directives[1]
        self.assertEqual(edit.args["search"], "<main></main>")
        self.assertEqual(edit.args["replace"], "<main><Counter /></main>")
        self.assertEqual(directives[2].args, {"from": "src/old.ts", "to": "src/lib/old.ts"})
        self.assertEqual(directives[4].args["packages"], "clsx zustand")
        self.assertEqual(directives[5].args["content"], "Add counter")

    def test_prose_and_directives_cover_the_text(self) -> None:
        pieces = parse_response(STREAMED_RESPONSE)

        self.assertIsInstance(pieces[0], Prose)
        self.assertEqual(pieces[0].text, "Adding the counter component.\n")
        self.assertIsInstance(pieces[-1], Prose)
        self.assertEqual(pieces[-1].text, "\nDone.")
        self.assertEqual("".join(STREAMED_RESPONSE[p.start:p.end] for p in pieces), STREAMED_RESPONSE)

    def test_every_streamed_prefix_only_extends_earlier_arguments(self) -> None:
        previous: list[Directive] = []
        for size in range(len(STREAMED_RESPONSE) + 1):
            current = parse_directives(STREAMED_RESPONSE[:size])
            self.assertGreaterEqual(len(current), len(previous), msg=f"prefix={size}")
            for before, after in zip(previous, current):
                self.assertEqual(before.kind, after.kind, msg=f"prefix={size}")
                self.assertEqual(before.start, after.start, msg=f"prefix={size}")
                if before.complete:
                    self.assertEqual(before, after, msg=f"prefix={size}")
                for key, value in before.args.items():
                    self.assertIn(key, after.args, msg=f"prefix={size} key={key}")
                    self.assertTrue(
                        after.args[key].startswith(value),
                        msg=f"prefix={size} key={key} {value!r} -> {after.args[key]!r}",
                    )
            previous = current

        self.assertEqual(previous, parse_directives(STREAMED_RESPONSE))

    def test_parsing_is_idempotent(self) -> None:
        half = STREAMED_RESPONSE[: len(STREAMED_RESPONSE) // 2]
        self.assertEqual(parse_response(half), parse_response(half))
        self.assertEqual(parse_response(STREAMED_RESPONSE), parse_response(STREAMED_RESPONSE))

    def test_partial_directive_exposes_received_fields(self) -> None:
        text = '<blaze-write path="src/a.ts" descr'
        directives = parse_directives(text)
        self.assertEqual(len(directives), 1)
        self.assertFalse(directives[0].complete)
        self.assertEqual(directives[0].args, {"path": "src/a.ts"})

        in_value = parse_directives('<blaze-write path="src/comp')
        self.assertEqual(in_value[0].args, {"path": "src/comp"})

        body = parse_directives('<blaze-write path="a.ts">\nline one\nline t')
        self.assertEqual(body[0].args["content"], "line one\nline t")

    def test_partial_closing_tag_is_not_exposed_as_content(self) -> None:
        directives = parse_directives('<blaze-write path="a.ts">\nconst a = 1;\n</blaze-wr')
        self.assertEqual(directives[0].args["content"], "const a = 1;")
        self.assertFalse(directives[0].complete)

    def test_search_replace_has_no_replace_until_separator(self) -> None:
        partial = parse_directives('<blaze-search-replace path="a.ts">\n<<<<<<< SEARCH\nold line\n==')
        self.assertEqual(partial[0].args["search"], "old line")
        self.assertNotIn("replace", partial[0].args)

        started = parse_directives('<blaze-search-replace path="a.ts">\n<<<<<<< SEARCH\nold\n=======\nne')
        self.assertEqual(started[0].args["replace"], "ne")

    def test_empty_attributes_are_absent(self) -> None:
        directives = parse_directives('<blaze-write path="a.ts" description="">x</blaze-write>')
        self.assertNotIn("description", directives[0].args)

    def test_unterminated_tag_stays_partial(self) -> None:
        directives = parse_directives('Text <blaze-delete path="a.ts">')
        self.assertEqual(len(directives), 1)
        self.assertFalse(directives[0].complete)

    def test_unknown_tags_are_prose(self) -> None:
        pieces = parse_response('<blaze-writer path="a.ts">x</blaze-writer>')
        self.assertEqual(len(pieces), 1)
        self.assertIsInstance(pieces[0], Prose)

    def test_same_name_tags_do_not_nest(self) -> None:
        text = '<blaze-write path="a.md">\nsee <blaze-write> docs\n</blaze-write> tail </blaze-write>'
        directives = parse_directives(text)
        self.assertEqual(len(directives), 1)
        self.assertEqual(directives[0].args["content"], "see <blaze-write> docs")


class NeutralizationTests(unittest.TestCase):
    def test_brackets_inside_attribute_values_are_substituted(self) -> None:
        text = '<blaze-write path="a.tsx" description="Uses <a> tags.">body</blaze-write>'
        neutralized = neutralize_attribute_brackets(text)

        self.assertEqual(
            neutralized,
            f'<blaze-write path="a.tsx" description="Uses {LT_SUBSTITUTE}a{GT_SUBSTITUTE} tags.">body</blaze-write>',
        )
        self.assertEqual(len(neutralized), len(text))
        directives = parse_directives(text)
        self.assertTrue(directives[0].complete)
        self.assertEqual(directives[0].args["content"], "body")
        self.assertEqual(directives[0].args["description"], f"Uses {LT_SUBSTITUTE}a{GT_SUBSTITUTE} tags.")

    def test_text_outside_recognized_tags_is_untouched(self) -> None:
        text = 'Compare <div class="x>y"> with <blaze-delete path="a.ts"></blaze-delete> and <b>bold</b>'
        self.assertEqual(neutralize_attribute_brackets(text), text)

    def test_tag_bodies_are_written_byte_exact(self) -> None:
        text = '<blaze-write path="index.html">\n<p class="a">1 < 2</p>\n</blaze-write>'
        self.assertEqual(neutralize_attribute_brackets(text), text)
        self.assertEqual(parse_directives(text)[0].args["content"], '<p class="a">1 < 2</p>')


class RenderingTests(unittest.TestCase):
    def _round_trip(self, text: str) -> None:
        original = parse_directives(text)[0]
        rendered = render_tag(original.kind, original.args, True)
        assert rendered is not None
        reparsed = parse_directives(rendered)[0]
        self.assertEqual(reparsed.kind, original.kind)
        self.assertEqual(reparsed.args, original.args)
        self.assertTrue(reparsed.complete)

    def test_round_trip_without_optional_attributes(self) -> None:
        self._round_trip('<blaze-write path="src/a.ts">\nexport const a = 1;\n</blaze-write>')
        self._round_trip(
            '<blaze-search-replace path="a.ts">\n<<<<<<< SEARCH\nold\n=======\nnew\n>>>>>>> REPLACE\n</blaze-search-replace>'
        )
        self._round_trip('<blaze-rename from="a.ts" to="b.ts"></blaze-rename>')

    def test_round_trip_escapes_attribute_values(self) -> None:
        self._round_trip('<blaze-write path="a.ts" description="say &quot;hi&quot; &amp; leave">x</blaze-write>')

    def test_partial_search_replace_layout(self) -> None:
        self.assertEqual(
            render_tag(DirectiveKind.SEARCH_REPLACE, {"path": "a.ts", "search": "old"}, False),
            '<blaze-search-replace path="a.ts" description="">\n<<<<<<< SEARCH\nold',
        )
        self.assertEqual(
            render_tag(DirectiveKind.SEARCH_REPLACE, {"path": "a.ts", "search": "old", "replace": "ne"}, False),
            '<blaze-search-replace path="a.ts" description="">\n<<<<<<< SEARCH\nold\n=======\nne',
        )

    def test_complete_search_replace_without_replace_emits_empty_section(self) -> None:
        rendered = render_tag(DirectiveKind.SEARCH_REPLACE, {"path": "a.ts", "search": "old"}, True)
        self.assertEqual(
            rendered,
            '<blaze-search-replace path="a.ts" description="">\n<<<<<<< SEARCH\nold\n=======\n'
            "\n>>>>>>> REPLACE\n</blaze-search-replace>",
        )

    def test_render_waits_for_identifying_attributes(self) -> None:
        self.assertIsNone(render_tag(DirectiveKind.WRITE, {}, False))
        self.assertIsNone(render_tag(DirectiveKind.RENAME, {"from": "a.ts"}, False))


class ExtractionTests(unittest.TestCase):
    def test_actionable_tags_drop_surrounding_prose(self) -> None:
        text = 'Sure!\n<blaze-write path="a.ts">x</blaze-write>\nAnd then\n<blaze-delete path="b.ts"></blaze-delete>\nBye'
        self.assertEqual(
            extract_actionable_tags(text),
            '<blaze-write path="a.ts">x</blaze-write>\n\n<blaze-delete path="b.ts"></blaze-delete>',
        )

    def test_incomplete_tags_are_not_actionable(self) -> None:
        self.assertEqual(extract_actionable_tags('Hi <blaze-write path="a.ts">partial'), "")
        self.assertEqual(extract_actionable_tags("no tags here"), "")


if __name__ == "__main__":
    unittest.main()
