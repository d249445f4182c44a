import textwrap

import pytest

from specmon.static_parser import NoSpecsAtLineError, StaticSpecParser, find_specs_at_line
from specmon.tree import flatten_tree


def parse(source):
    return StaticSpecParser().parse_source(textwrap.dedent(source).lstrip("\n"), "/p/calc_spec.py")


def names(result):
    return [spec.display_name for spec in flatten_tree(result.root, "/p/calc_spec.py", "calc_spec.py")]


class TestDeclarationStructure:
    def test_groups_and_cases(self, calculator_spec):
        result = parse(calculator_spec)
        assert result.is_complete
        assert not result.used_line_scanner
        assert names(result) == [
            "Calculator > adds",
            "Calculator > divides",
            "Calculator > with negatives > subtracts",
        ]

    def test_lines_and_spans(self, calculator_spec):
        result = parse(calculator_spec)
        calculator = result.root.children[0]
        assert (calculator.line, calculator.end_line) == (3, 13)
        adds = calculator.specs[0]
        assert (adds.line, adds.end_line) == (4, 6)
        negatives = calculator.children[0]
        assert (negatives.line, negatives.end_line) == (8, 11)
        divides = calculator.specs[1]
        assert (divides.line, divides.end_line) == (13, 13)

    def test_flags_and_tags(self):
        result = parse(
            '''
            with fdescribe("Focused", tags=["slow"]):
                @xit("skipped", tags=["flaky"])
                def _():
                    pass

                @fit("focused")
                def _():
                    pass

                it("pending")
            '''
        )
        specs = {spec.description: spec for spec in flatten_tree(result.root, "/p/a_spec.py", "a_spec.py")}
        assert specs["skipped"].skipped and specs["skipped"].focused
        assert specs["skipped"].tags == ("slow", "flaky")
        assert specs["focused"].focused and not specs["focused"].skipped
        assert specs["pending"].pending
        assert specs["pending"].digest is None
        assert specs["focused"].digest is not None

    def test_xdescribe_skips_everything_inside(self):
        result = parse(
            '''
            with xdescribe("Off"):
                with context("nested"):
                    @it("case")
                    def _():
                        pass
            '''
        )
        (spec,) = flatten_tree(result.root, "/p/a_spec.py", "a_spec.py")
        assert spec.skipped

    def test_bodies_are_not_entered(self):
        """Declarations inside a case body are not part of the tree."""
        result = parse(
            '''
            with describe("Outer"):
                @it("case")
                def _():
                    it("not a declaration")
            '''
        )
        assert names(result) == ["Outer > case"]

    def test_attribute_style_declarations(self):
        result = parse(
            '''
            from specmon import dsl

            with dsl.describe("Dotted"):
                @dsl.it("works")
                def _():
                    pass
            '''
        )
        assert names(result) == ["Dotted > works"]

    def test_literal_concatenation_is_static(self):
        result = parse(
            '''
            with describe("Str" + "ing"):
                @it(f"plain f-string")
                def _():
                    pass
            '''
        )
        assert result.is_complete
        assert names(result) == ["String > plain f-string"]

    def test_only_first_top_level_group_is_used(self):
        result = parse(
            '''
            with describe("First"):
                it("one")

            with describe("Second"):
                it("two")
            '''
        )
        assert names(result) == ["First > one"]
        assert any("Second" in warning for warning in result.warnings)

    def test_top_level_cases_have_no_context(self):
        result = parse(
            '''
            it("lonely")
            '''
        )
        assert names(result) == ["lonely"]


class TestDynamicDescriptions:
    def test_formatted_description_is_a_placeholder(self):
        result = parse(
            '''
            with describe("Math"):
                for n in range(3):
                    @it(f"handles {n}")
                    def _():
                        pass
            '''
        )
        assert not result.is_complete
        (spec,) = flatten_tree(result.root, "/p/a_spec.py", "a_spec.py")
        assert spec.dynamic
        assert spec.description == "<dynamic at line 3>"
        assert any("not a string literal" in warning for warning in result.warnings)

    def test_dynamic_group_marks_its_cases(self):
        result = parse(
            '''
            NAME = "Math"
            with describe(NAME):
                @it("adds")
                def _():
                    pass
            '''
        )
        (spec,) = flatten_tree(result.root, "/p/a_spec.py", "a_spec.py")
        assert spec.dynamic
        assert spec.context_path == ("<dynamic at line 2>",)


class TestLineScanner:
    BROKEN = '''
        from specmon.dsl import describe, it

        with describe("Calculator"):
            @it("adds", tags=["math"])
            def _():
                assert 1 + 1 == 2

            @it("breaks")
            def _():
                assert (1 +

            it("divides")
        '''

    def test_syntax_error_uses_line_scanner(self):
        result = parse(self.BROKEN)
        assert result.used_line_scanner
        assert names(result) == [
            "Calculator > adds",
            "Calculator > breaks",
            "Calculator > divides",
        ]

    def test_scanner_spans_and_flags(self):
        calculator = parse(self.BROKEN).root.children[0]
        adds, breaks, divides = calculator.specs
        assert (adds.line, adds.end_line) == (4, 6)
        assert adds.tags == ["math"]
        assert (breaks.line, breaks.end_line) == (8, 10)
        assert not adds.pending and divides.pending
        assert (calculator.line, calculator.end_line) == (3, 12)

    def test_scanner_digest_matches_ast_digest(self):
        """Unchanged cases keep their fingerprint when a sibling breaks the module."""
        valid = parse(self.BROKEN.replace("assert (1 +", "assert (1 + 1)"))
        broken = parse(self.BROKEN)
        assert valid.root.children[0].specs[0].digest == broken.root.children[0].specs[0].digest

    def test_scanner_dynamic_description(self):
        result = parse(
            '''
            with describe("Math"):
                @it(name)
                def _():
                    pass
            def broken(:
            '''
        )
        assert not result.is_complete
        assert result.root.children[0].specs[0].description == "<dynamic at line 2>"


class TestFindSpecsAtLine:
    def _names(self, matches):
        return [" > ".join(path + (spec.description,)) for path, spec in matches]

    def test_line_inside_case_body(self, calculator_spec):
        result = parse(calculator_spec)
        assert self._names(find_specs_at_line(result, 6)) == ["Calculator > adds"]

    def test_line_on_group_selects_its_cases(self, calculator_spec):
        result = parse(calculator_spec)
        assert self._names(find_specs_at_line(result, 8)) == ["Calculator > with negatives > subtracts"]

    def test_blank_line_inside_group_selects_innermost_group(self, calculator_spec):
        result = parse(calculator_spec)
        assert self._names(find_specs_at_line(result, 7)) == [
            "Calculator > adds",
            "Calculator > divides",
            "Calculator > with negatives > subtracts",
        ]

    def test_adjacent_line_outside_any_group(self):
        result = parse(
            '''
            it("first")

            it("second")
            '''
        )
        assert self._names(find_specs_at_line(result, 2)) == ["first"]

    def test_nothing_at_line(self, calculator_spec):
        result = parse(calculator_spec)
        with pytest.raises(NoSpecsAtLineError, match="No specs found at the specified line numbers: 40"):
            find_specs_at_line(result, 40)
