import sys
import uuid
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from courier.core.errors import ResolutionWarning
from courier.core.variables import VariableScopes, find_variables, resolve, resolve_request
from courier.models import (
    AuthConfig,
    Environment,
    GrpcRequest,
    HttpRequest,
    KeyValue,
    RequestBody,
    Scope,
    Variable,
)


def _env(**values):
    return Environment(variables=[Variable(key=k, value=v) for k, v in values.items()])


def test_precedence_local_environment_collection_global():
    scopes = VariableScopes(
        local={"a": "L"},
        environment=_env(a="E", b="E"),
        collection=[Variable(key="a", value="C"), Variable(key="b", value="C"), Variable(key="c", value="C")],
        globals_=_env(a="G", b="G", c="G", d="G"),
    )
    text, warnings = resolve("{{a}}-{{b}}-{{c}}-{{d}}", scopes)
    assert text == "L-E-C-G"
    assert warnings == []
    assert scopes.source_of("c") == Scope.COLLECTION


def test_unresolved_placeholder_stays_literal_with_warning():
    text, warnings = resolve("{{host}}/users", VariableScopes())
    assert text == "{{host}}/users"
    assert warnings == [ResolutionWarning(variable="host")]
    assert warnings[0].message == "Variable 'host' not found"


def test_substitution_is_single_pass():
    scopes = VariableScopes(environment=_env(a="{{b}}", b="x"))
    text, warnings = resolve("{{a}}", scopes)
    assert text == "{{b}}"
    assert warnings == []


def test_escaped_placeholder_is_literal():
    scopes = VariableScopes(environment=_env(a="1"))
    text, warnings = resolve("\\{{a}} and {{a}}", scopes)
    assert text == "{{a}} and 1"
    assert warnings == []


def test_whitespace_inside_braces_is_trimmed():
    text, _ = resolve("{{  name  }}", VariableScopes(environment=_env(name="bob")))
    assert text == "bob"


def test_disabled_ignored_and_last_enabled_definition_wins():
    env = Environment(
        variables=[
            Variable(key="a", value="1"),
            Variable(key="a", value="2"),
            Variable(key="a", value="3", enabled=False),
        ]
    )
    text, _ = resolve("{{a}}", VariableScopes(environment=env))
    assert text == "2"


def test_dynamic_variables_generated_unless_defined():
    text, warnings = resolve("{{$uuid}}", VariableScopes())
    uuid.UUID(text)
    assert warnings == []

    text, _ = resolve("{{$timestamp}}", VariableScopes())
    assert text.isdigit()

    text, _ = resolve("{{$uuid}}", VariableScopes(environment=_env(**{"$uuid": "fixed"})))
    assert text == "fixed"


def test_local_unset_hides_lower_scopes():
    scopes = VariableScopes(environment=_env(a="E"))
    hidden = scopes.with_local({"a": None})
    text, warnings = resolve("{{a}}", hidden)
    assert text == "{{a}}"
    assert [w.variable for w in warnings] == ["a"]
    # Original snapshot is untouched
    assert resolve("{{a}}", scopes).text == "E"


def test_snapshot_ignores_later_environment_edits():
    env = _env(a="before")
    scopes = VariableScopes.snapshot(environment=env)
    env.variables.append(Variable(key="b", value="late"))
    env.variables[0].value = "after"
    assert resolve("{{a}}{{b}}", scopes).text == "before{{b}}"


def test_merged_view_prefers_higher_scopes():
    scopes = VariableScopes(local={"a": "L", "gone": None}, environment=_env(a="E", gone="E", b="E"))
    assert scopes.merged() == {"a": "L", "b": "E"}


def test_resolve_request_http_values_but_not_keys():
    scopes = VariableScopes(environment=_env(host="https://api.test", token="t0k", id="7", k="Header"))
    request = HttpRequest(
        url="{{host}}/users/{{id}}",
        headers=[KeyValue(key="{{k}}", value="{{missing}}")],
        params=[KeyValue(key="q", value="{{id}}")],
        body=RequestBody(kind="json", content='{"id": "{{id}}", "x": "{{missing}}"}'),
        auth=AuthConfig(type="bearer", token="{{token}}"),
    )
    resolved, warnings = resolve_request(request, scopes)

    assert resolved.url == "https://api.test/users/7"
    assert resolved.headers[0].key == "{{k}}"
    assert resolved.params[0].value == "7"
    assert resolved.body.content == '{"id": "7", "x": "{{missing}}"}'
    assert resolved.auth.token == "t0k"
    # De-duplicated, first-seen order
    assert [w.variable for w in warnings] == ["missing"]
    # The template is not modified
    assert request.url == "{{host}}/users/{{id}}"


def test_resolve_request_grpc_message_and_metadata():
    scopes = VariableScopes(environment=_env(user="ada", token="abc"))
    request = GrpcRequest(
        url="localhost:50051",
        message='{"name": "{{user}}"}',
        metadata=[KeyValue(key="authorization", value="Bearer {{token}}")],
    )
    resolved, warnings = resolve_request(request, scopes)
    assert resolved.message == '{"name": "ada"}'
    assert resolved.metadata[0].value == "Bearer abc"
    assert warnings == []


def test_find_variables_lists_unique_names():
    assert find_variables("{{a}}/{{ b }}/{{a}}/\\{{c}}") == ["a", "b"]


def test_resolve_request_oauth2_settings():
    scopes = VariableScopes(environment=_env(access="a1", cid="client", secret="s3"))
    request = HttpRequest(
        auth=AuthConfig(
            type="oauth2",
            access_token="{{access}}",
            token_url="https://auth.test/token",
            client_id="{{cid}}",
            client_secret="{{secret}}",
            scope="{{scope}}",
        )
    )
    resolved, warnings = resolve_request(request, scopes)
    assert (resolved.auth.access_token, resolved.auth.client_id, resolved.auth.client_secret) == ("a1", "client", "s3")
    assert resolved.auth.scope == "{{scope}}"
    assert [w.variable for w in warnings] == ["scope"]
