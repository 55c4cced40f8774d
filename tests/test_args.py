"""Tests for routing and substituting extra command arguments."""

from __future__ import annotations

import pytest

from devrun.args import ExtraArgs, apply_extra_args, route_extra_args
from devrun.errors import DevrunError


class TestRouteExtraArgs:
    def test_no_arguments(self) -> None:
        extra = route_extra_args([], "args", "api")
        assert not extra
        assert extra.for_command("api") == []

    def test_leading_arguments_go_to_default_service(self) -> None:
        extra = route_extra_args(["--inspect", "-v"], "args", "api")
        assert extra.for_command("api") == ["--inspect", "-v"]
        assert extra.services() == {"api"}

    def test_keyword_routes_to_service_and_index(self) -> None:
        extra = route_extra_args(
            ["--inspect", "args", "web:1", "--port", "3001", "args", "db", "-v"],
            "args",
            "api",
        )

        assert extra.for_command("api") == ["--inspect"]
        assert extra.for_command("web", 1) == ["--port", "3001"]
        assert extra.for_command("web", 0) == []
        assert extra.for_command("db") == ["-v"]

    def test_repeated_target_accumulates(self) -> None:
        extra = route_extra_args(["args", "api", "a", "args", "api", "b"], "args")
        assert extra.for_command("api") == ["a", "b"]

    def test_custom_keyword(self) -> None:
        extra = route_extra_args(["with", "api", "args"], "with")
        assert extra.for_command("api") == ["args"]

    def test_name_with_colon_but_no_index(self) -> None:
        extra = route_extra_args(["args", "ns:api", "x"], "args")
        assert extra.for_command("ns:api") == ["x"]

    def test_keyword_without_target(self) -> None:
        with pytest.raises(DevrunError, match="must be followed by SERVICE"):
            route_extra_args(["args"], "args", "api")

    def test_leading_arguments_without_default_service(self) -> None:
        with pytest.raises(DevrunError, match="not routed to a service"):
            route_extra_args(["--inspect"], "args")


class TestApplyExtraArgs:
    def test_appends_when_no_placeholder(self) -> None:
        assert apply_extra_args(["node", "server.js"], ["--inspect"]) == ["node", "server.js", "--inspect"]

    def test_placeholders_consume_in_order(self) -> None:
        command = ["serve", "--port", "$arg", "--host", "$arg"]
        assert apply_extra_args(command, ["3000", "0.0.0.0"]) == ["serve", "--port", "3000", "--host", "0.0.0.0"]

    def test_placeholder_inside_token(self) -> None:
        assert apply_extra_args(["serve", "--port=$arg"], ["8080"]) == ["serve", "--port=8080"]

    def test_leftover_arguments_appended(self) -> None:
        assert apply_extra_args(["run", "$arg"], ["a", "b", "c"]) == ["run", "a", "b", "c"]

    def test_missing_argument_drops_bare_placeholder(self) -> None:
        assert apply_extra_args(["run", "$arg", "--flag"], []) == ["run", "--flag"]

    def test_missing_argument_inside_token(self) -> None:
        assert apply_extra_args(["run", "--name=$arg"], []) == ["run", "--name="]

    def test_escaped_placeholder_is_literal(self) -> None:
        assert apply_extra_args(["echo", "\\$arg", "$arg"], ["x"]) == ["echo", "$arg", "x"]

    def test_longer_identifier_is_not_a_placeholder(self) -> None:
        assert apply_extra_args(["echo", "$args"], ["x"]) == ["echo", "$args", "x"]

    def test_command_is_not_mutated(self) -> None:
        command = ["run", "$arg"]
        apply_extra_args(command, ["a"])
        assert command == ["run", "$arg"]


def test_empty_extra_args_is_falsy() -> None:
    assert not ExtraArgs()
    assert ExtraArgs().services() == set()
