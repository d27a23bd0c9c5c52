"""Tests for the expression language: tokenizer, parser, evaluator and templates."""

import pytest

from pipelines_mcp.engine import ExpressionEvaluationError, ExpressionSyntaxError
from pipelines_mcp.engine.expressions import (
    ExpressionContext,
    NeedsEntry,
    StatusSnapshot,
    StepEntry,
    evaluate,
    evaluate_condition,
    interpolate,
    parse,
    parse_condition,
    split_template,
    template_expressions,
)
from pipelines_mcp.engine.expressions.lexer import TokenKind, tokenize


@pytest.fixture
def context() -> ExpressionContext:
    return ExpressionContext(
        github={"ref": "refs/heads/main", "event_name": "push", "run_number": 7},
        inputs={"target": "staging", "count": "3", "debug": False},
        env={"REGION": "eu-west-1"},
        needs={
            "build": NeedsEntry(result="success", outputs={"version": "1.2.3"}),
            "lint": NeedsEntry(result="skipped", outputs={}),
        },
        steps={"meta": StepEntry("success", "success", {"tag": "v1"})},
        declared_steps=frozenset({"meta", "later"}),
        secrets={"TOKEN": "abc"},
    )


# =============================================================================
# Tokenizer and parser
# =============================================================================


def test_tokenize_kinds():
    tokens = tokenize("needs.build-app.outputs['x'] == 'it''s' && !false")
    kinds = [t.kind for t in tokens]

    assert kinds == [
        TokenKind.IDENT,
        TokenKind.DOT,
        TokenKind.IDENT,
        TokenKind.DOT,
        TokenKind.IDENT,
        TokenKind.LBRACKET,
        TokenKind.STRING,
        TokenKind.RBRACKET,
        TokenKind.OPERATOR,
        TokenKind.STRING,
        TokenKind.OPERATOR,
        TokenKind.OPERATOR,
        TokenKind.KEYWORD,
        TokenKind.END,
    ]
    assert tokens[2].value == "build-app"
    assert tokens[9].value == "it's"


def test_leading_minus_is_a_negative_number():
    tokens = tokenize("-1 == x")
    assert tokens[0].kind == TokenKind.NUMBER
    assert tokens[0].value == "-1"


@pytest.mark.parametrize(
    "source",
    [
        "",
        "needs.",
        "a ==",
        "(a",
        'a == "double"',
        "unknown_fn(1)",
        "contains('a')",
        "'unterminated",
        "a @ b",
    ],
)
def test_malformed_expressions_raise_syntax_error(source):
    with pytest.raises(ExpressionSyntaxError):
        parse(source)


def test_syntax_error_reports_position():
    with pytest.raises(ExpressionSyntaxError) as exc_info:
        parse("a == == b")
    assert exc_info.value.position == 5


def test_references_collects_secret_names():
    parsed = parse("secrets.TOKEN != '' && secrets['OTHER'] && needs.build.result")
    assert parsed.references("secrets") == {"TOKEN", "OTHER"}
    assert parsed.references("needs") == {"build"}


# =============================================================================
# Evaluation
# =============================================================================


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("1 == 1.0", True),
        ("'1' == 1", True),
        ("'abc' == 'ABC'", True),
        ("null == 0", True),
        ("true == 1", True),
        ("'' == false", True),
        ("'a' != 'b'", True),
        ("2 < 10", True),
        ("'2' < '10'", False),
        ("NaN == NaN", False),
        ("0x10 == 16", True),
        ("!0", True),
        ("'x' || 'y'", "x"),
        ("'' || 'y'", "y"),
        ("'x' && 'y'", "y"),
        ("0 && 'y'", 0),
    ],
)
def test_operator_semantics(source, expected, context):
    assert evaluate(source, context) == expected


def test_context_lookups(context):
    assert evaluate("github.ref", context) == "refs/heads/main"
    assert evaluate("GITHUB.Event_Name", context) == "push"
    assert evaluate("inputs.target", context) == "staging"
    assert evaluate("env.REGION", context) == "eu-west-1"
    assert evaluate("needs.build.outputs.version", context) == "1.2.3"
    assert evaluate("needs.build.result", context) == "success"
    assert evaluate("steps.meta.outputs.tag", context) == "v1"
    assert evaluate("steps.meta.outcome", context) == "success"
    assert evaluate("github['run_number']", context) == 7


def test_missing_output_is_empty_string(context):
    assert evaluate("needs.build.outputs.missing", context) == ""
    assert evaluate("needs.lint.outputs.anything", context) == ""


def test_missing_secret_is_empty_string(context):
    assert evaluate("secrets.TOKEN", context) == "abc"
    assert evaluate("secrets.NOPE", context) == ""


def test_undeclared_needs_is_an_evaluation_error(context):
    with pytest.raises(ExpressionEvaluationError) as exc_info:
        evaluate("needs.deploy.outputs.url", context)
    assert "not listed in needs" in str(exc_info.value)


def test_declared_but_unfinished_step_is_null(context):
    assert evaluate("steps.later.outputs.x", context) is None
    assert evaluate("steps.later", context) is None


def test_undeclared_step_is_an_evaluation_error(context):
    with pytest.raises(ExpressionEvaluationError):
        evaluate("steps.nope.outputs.x", context)


def test_steps_outside_job_is_an_evaluation_error():
    with pytest.raises(ExpressionEvaluationError):
        evaluate("steps.meta.outcome", ExpressionContext())


def test_unknown_named_value_is_an_evaluation_error(context):
    with pytest.raises(ExpressionEvaluationError):
        evaluate("matrix.os", context)


def test_functions(context):
    assert evaluate("contains('Hello World', 'world')", context) is True
    assert evaluate("startsWith(github.ref, 'refs/heads/')", context) is True
    assert evaluate("endsWith('release.tar.gz', '.GZ')", context) is True
    assert evaluate("format('{0}-{1} {{x}}', 'a', 2)", context) == "a-2 {x}"
    assert evaluate("join(fromJSON('[1, 2, 3]'), '+')", context) == "1+2+3"
    assert evaluate("fromJSON('{\"a\": {\"b\": 5}}').a.b", context) == 5
    assert evaluate("toJSON(fromJSON('[1]'))", context) == "[\n  1\n]"
    assert evaluate("contains(fromJSON('[\"push\", \"pr\"]'), github.event_name)", context)


def test_function_errors_are_evaluation_errors(context):
    with pytest.raises(ExpressionEvaluationError):
        evaluate("fromJSON('not json')", context)
    with pytest.raises(ExpressionEvaluationError):
        evaluate("format('{1}', 'only one')", context)


def test_object_filter(context):
    assert evaluate("needs.*.result", context) == ["success", "skipped"]
    assert evaluate("contains(needs.*.result, 'skipped')", context) is True


# =============================================================================
# Status functions and conditions
# =============================================================================


def test_absent_condition_means_success():
    assert evaluate_condition(None, ExpressionContext()) is True
    failed = ExpressionContext(status=StatusSnapshot(succeeded=False, failed=True))
    assert evaluate_condition(None, failed) is False


def test_condition_without_status_function_gets_implicit_success():
    failed = ExpressionContext(
        inputs={"go": "yes"}, status=StatusSnapshot(succeeded=False, failed=True)
    )
    assert evaluate_condition("inputs.go == 'yes'", failed) is False
    assert evaluate_condition("always() && inputs.go == 'yes'", failed) is True
    assert evaluate_condition("failure()", failed) is True


def test_condition_accepts_wrapped_form(context):
    assert evaluate_condition("${{ github.ref == 'refs/heads/main' }}", context) is True
    assert evaluate_condition("${{ github.ref == 'refs/heads/dev' }}", context) is False


def test_condition_accepts_parsed_expression(context):
    failed = ExpressionContext(status=StatusSnapshot(succeeded=False, failed=True))

    assert evaluate_condition(parse_condition(None), context) is True
    assert evaluate_condition(parse_condition(None), failed) is False
    assert evaluate_condition(parse_condition("github.ref == 'refs/heads/main'"), context) is True
    assert evaluate_condition(parse_condition("always()"), failed) is True


def test_cancelled_status():
    cancelled = ExpressionContext(status=StatusSnapshot(succeeded=False, cancelled=True))
    assert evaluate_condition("success()", cancelled) is False
    assert evaluate_condition("cancelled()", cancelled) is True
    assert evaluate_condition("always()", cancelled) is True
    assert parse_condition("always()").tolerates_cancellation()
    assert not parse_condition("failure()").tolerates_cancellation()


def test_job_status(context):
    failed = ExpressionContext(status=StatusSnapshot(succeeded=False, failed=True))
    assert evaluate("job.status", context) == "success"
    assert evaluate("job.status", failed) == "failure"


# =============================================================================
# Templates
# =============================================================================


def test_interpolate(context):
    template = "deploy ${{ needs.build.outputs.version }} to ${{ inputs.target }}"
    assert interpolate(template, context) == "deploy 1.2.3 to staging"


def test_interpolate_converts_values_to_strings(context):
    assert interpolate("${{ inputs.debug }}|${{ 1.5 }}|${{ null }}|${{ 3.0 }}", context) == (
        "false|1.5||3"
    )


def test_interpolate_without_expressions_is_identity(context):
    assert interpolate("plain text {{ not ours }}", context) == "plain text {{ not ours }}"


def test_closing_braces_inside_string_literals(context):
    assert split_template("${{ format('{{0}}', 'x') }}!")[0].text == "format('{{0}}', 'x')"
    assert interpolate("${{ format('{{0}}', 'x') }}!", context) == "{0}!"


def test_unterminated_template_is_a_syntax_error():
    with pytest.raises(ExpressionSyntaxError):
        template_expressions("echo ${{ inputs.x")
