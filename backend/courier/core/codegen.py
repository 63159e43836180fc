import base64
import json
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import quote

from courier.core.errors import GenerationError, UnsupportedLanguageError
from courier.models import HttpRequest, Request

GENERATORS: Dict[str, Callable[["Prepared", bool], str]] = {}
LABELS: Dict[str, str] = {}


def register(language_id: str, label: str):
    """Add a generator to the registry. Registration order is display order."""

    def decorator(fn):
        GENERATORS[language_id] = fn
        LABELS[language_id] = label
        return fn

    return decorator


def supported_languages() -> List[Dict[str, str]]:
    return [{"id": language_id, "name": LABELS[language_id]} for language_id in GENERATORS]


class Prepared(NamedTuple):
    """Language-neutral view of an http request, shared by every generator."""

    name: str
    method: str
    url: str
    headers: List[Tuple[str, str]]
    body_mode: str  # none | text | multipart | file
    text: str = ""
    fields: List[Tuple[str, str]] = []
    path: str = ""


_CONTENT_TYPES = {
    "json": "application/json",
    "x-www-form-urlencoded": "application/x-www-form-urlencoded",
}


def _encode(value: str) -> str:
    # Placeholders like {{host}} stay readable in generated code
    return quote(value, safe="{}$")


def _build_url(url: str, params: List[Tuple[str, str]]) -> str:
    if not params:
        return url
    query = "&".join(f"{_encode(k)}={_encode(v)}" for k, v in params)
    return f"{url}&{query}" if "?" in url else f"{url}?{query}"


def prepare(req: HttpRequest) -> Prepared:
    params = [(p.key, p.value) for p in req.params if p.enabled and p.key.strip()]
    headers: List[Tuple[str, str]] = []

    auth = req.auth
    if auth.type == "basic":
        token = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        headers.append(("Authorization", f"Basic {token}"))
    elif auth.type == "bearer":
        headers.append(("Authorization", f"Bearer {auth.token}"))
    elif auth.type == "oauth2" and auth.access_token:
        headers.append(("Authorization", auth.oauth2_header()))
    elif auth.type == "api-key" and auth.key:
        if auth.add_to == "query":
            params.append((auth.key, auth.value))
        else:
            headers.append((auth.key, auth.value))

    headers += [(h.key, h.value) for h in req.headers if h.enabled and h.key.strip()]

    body = req.body
    rows = [(r.key, r.value) for r in body.form if r.enabled and r.key.strip()]
    mode, text, fields, path = "none", "", [], ""
    if body.kind in ("json", "raw") and body.content:
        mode, text = "text", body.content
    elif body.kind == "x-www-form-urlencoded" and (rows or body.content):
        mode = "text"
        text = "&".join(f"{_encode(k)}={_encode(v)}" for k, v in rows) if rows else body.content
    elif body.kind == "form-data" and rows:
        mode, fields = "multipart", rows
    elif body.kind == "binary" and body.content:
        mode, path = "file", body.content

    content_type = _CONTENT_TYPES.get(body.kind)
    if mode == "text" and content_type and not any(k.lower() == "content-type" for k, _ in headers):
        headers.append(("Content-Type", content_type))

    return Prepared(
        name=" ".join(req.name.split()) or "HTTP Request",
        method=req.method,
        url=_build_url(req.url, params),
        headers=headers,
        body_mode=mode,
        text=text,
        fields=fields,
        path=path,
    )


def generate(request: Request, language: str, include_comments: bool = False) -> str:
    generator = GENERATORS.get(language)
    if generator is None:
        raise UnsupportedLanguageError(language)
    if not isinstance(request, HttpRequest):
        raise GenerationError(f"Code generation supports http requests only, got {request.type}")
    return generator(prepare(request), include_comments)


# --- Quoting per target language ---

def _sh(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def _js(value: str) -> str:
    return json.dumps(value)


def _py(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


_go = _py


def _php(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _js_object(headers: List[Tuple[str, str]], indent: str) -> str:
    lines = [f"{indent}  {_js(k)}: {_js(v)}," for k, v in headers]
    lines[-1] = lines[-1].rstrip(",")
    return "{\n" + "\n".join(lines) + f"\n{indent}}}"


# --- Generators ---

@register("curl", "cURL")
def generate_curl(p: Prepared, include_comments: bool) -> str:
    parts = [f"curl -X {p.method} {_sh(p.url)}"]
    parts += [f"  -H {_sh(f'{k}: {v}')}" for k, v in p.headers]
    if p.body_mode == "text":
        parts.append(f"  --data-raw {_sh(p.text)}")
    elif p.body_mode == "multipart":
        parts += [f"  --form-string {_sh(f'{k}={v}')}" for k, v in p.fields]
    elif p.body_mode == "file":
        parts.append(f"  --data-binary {_sh('@' + p.path)}")
    command = " \\\n".join(parts)
    return f"# {p.name}\n{command}" if include_comments else command


def _js_body_setup(p: Prepared) -> Tuple[List[str], Optional[str]]:
    """Statements to run before the call, plus the expression for the body."""
    if p.body_mode == "text":
        return [], _js(p.text)
    if p.body_mode == "multipart":
        lines = ["const formData = new FormData();"]
        lines += [f"formData.append({_js(k)}, {_js(v)});" for k, v in p.fields]
        return lines, "formData"
    if p.body_mode == "file":
        return ['const fs = require("fs");'], f"fs.readFileSync({_js(p.path)})"
    return [], None


@register("javascript-fetch", "JavaScript (Fetch)")
def generate_fetch(p: Prepared, include_comments: bool) -> str:
    lines = [f"// {p.name}"] if include_comments else []
    setup, body = _js_body_setup(p)
    if setup:
        lines += setup + [""]
    options = [f"  method: {_js(p.method)}"]
    if p.headers:
        options.append(f"  headers: {_js_object(p.headers, '  ')}")
    if body is not None:
        options.append(f"  body: {body}")
    lines.append("const options = {")
    lines.append(",\n".join(options))
    lines.append("};")
    lines.append("")
    lines.append(f"fetch({_js(p.url)}, options)")
    lines.append("  .then((response) => response.text())")
    lines.append("  .then((text) => console.log(text))")
    lines.append('  .catch((error) => console.error("Error:", error));')
    return "\n".join(lines)


@register("javascript-axios", "JavaScript (Axios)")
def generate_axios(p: Prepared, include_comments: bool) -> str:
    lines = [f"// {p.name}"] if include_comments else []
    lines.append('const axios = require("axios");')
    setup, body = _js_body_setup(p)
    lines += [""] + setup
    config = [f"  method: {_js(p.method.lower())}", f"  url: {_js(p.url)}"]
    if p.headers:
        config.append(f"  headers: {_js_object(p.headers, '  ')}")
    if body is not None:
        config.append(f"  data: {body}")
    if setup:
        lines.append("")
    lines.append("axios({")
    lines.append(",\n".join(config))
    lines.append("})")
    lines.append("  .then((response) => console.log(response.data))")
    lines.append('  .catch((error) => console.error("Error:", error));')
    return "\n".join(lines)


def _python_client(p: Prepared, include_comments: bool, module: str, text_arg: str) -> str:
    lines = [f"# {p.name}"] if include_comments else []
    lines += [f"import {module}", "", f"url = {_py(p.url)}"]
    args = [_py(p.method), "url"]
    if p.headers:
        lines += ["", "headers = {"]
        lines += [f"    {_py(k)}: {_py(v)}," for k, v in p.headers]
        lines.append("}")
        args.append("headers=headers")
    if p.body_mode == "text":
        lines += ["", f"payload = {_py(p.text)}"]
        args.append(f"{text_arg}=payload")
    elif p.body_mode == "multipart":
        lines += ["", "files = ["]
        lines += [f"    ({_py(k)}, (None, {_py(v)}))," for k, v in p.fields]
        lines.append("]")
        args.append("files=files")
    lines.append("")
    call = f"{module}.request({', '.join(args)}"
    if p.body_mode == "file":
        lines.append(f"with open({_py(p.path)}, \"rb\") as f:")
        lines.append(f"    response = {call}, {text_arg}=f.read())")
    else:
        lines.append(f"response = {call})")
    lines += ["", "print(response.status_code)", "print(response.text)"]
    return "\n".join(lines)


@register("python-requests", "Python (Requests)")
def generate_python_requests(p: Prepared, include_comments: bool) -> str:
    return _python_client(p, include_comments, "requests", "data")


@register("python-httpx", "Python (httpx)")
def generate_python_httpx(p: Prepared, include_comments: bool) -> str:
    return _python_client(p, include_comments, "httpx", "content")


@register("go", "Go")
def generate_go(p: Prepared, include_comments: bool) -> str:
    imports = {"fmt", "io", "net/http"}
    body_lines: List[str] = []
    reader = "nil"
    if p.body_mode == "text":
        imports.add("strings")
        body_lines.append(f"\tpayload := strings.NewReader({_go(p.text)})")
        reader = "payload"
    elif p.body_mode == "multipart":
        imports.update({"bytes", "mime/multipart"})
        body_lines += ["\tpayload := &bytes.Buffer{}", "\twriter := multipart.NewWriter(payload)"]
        body_lines += [f"\t_ = writer.WriteField({_go(k)}, {_go(v)})" for k, v in p.fields]
        body_lines += ["\tif err := writer.Close(); err != nil {", "\t\tpanic(err)", "\t}"]
        reader = "payload"
    elif p.body_mode == "file":
        imports.add("os")
        body_lines += [
            f"\tpayload, err := os.Open({_go(p.path)})",
            "\tif err != nil {",
            "\t\tpanic(err)",
            "\t}",
            "\tdefer payload.Close()",
        ]
        reader = "payload"

    lines = [f"// {p.name}"] if include_comments else []
    lines += ["package main", "", "import ("]
    lines += [f'\t"{name}"' for name in sorted(imports)]
    lines += [")", "", "func main() {", f"\turl := {_go(p.url)}"]
    lines += body_lines
    lines += [
        "",
        f"\treq, err := http.NewRequest({_go(p.method)}, url, {reader})",
        "\tif err != nil {",
        "\t\tpanic(err)",
        "\t}",
    ]
    lines += [f"\treq.Header.Add({_go(k)}, {_go(v)})" for k, v in p.headers]
    if p.body_mode == "multipart":
        lines.append('\treq.Header.Set("Content-Type", writer.FormDataContentType())')
    lines += [
        "",
        "\tres, err := http.DefaultClient.Do(req)",
        "\tif err != nil {",
        "\t\tpanic(err)",
        "\t}",
        "\tdefer res.Body.Close()",
        "",
        "\tbody, err := io.ReadAll(res.Body)",
        "\tif err != nil {",
        "\t\tpanic(err)",
        "\t}",
        "\tfmt.Println(res.Status)",
        "\tfmt.Println(string(body))",
        "}",
    ]
    return "\n".join(lines)


@register("php-curl", "PHP (cURL)")
def generate_php_curl(p: Prepared, include_comments: bool) -> str:
    lines = ["<?php"]
    if include_comments:
        # "?>" would end PHP mode even inside a line comment
        lines.append("// " + p.name.replace("?>", "? >"))
    lines += [
        "",
        "$curl = curl_init();",
        "",
        "curl_setopt_array($curl, [",
        f"    CURLOPT_URL => {_php(p.url)},",
        "    CURLOPT_RETURNTRANSFER => true,",
        f"    CURLOPT_CUSTOMREQUEST => {_php(p.method)},",
    ]
    if p.headers:
        lines.append("    CURLOPT_HTTPHEADER => [")
        lines += [f"        {_php(f'{k}: {v}')}," for k, v in p.headers]
        lines.append("    ],")
    if p.body_mode == "text":
        lines.append(f"    CURLOPT_POSTFIELDS => {_php(p.text)},")
    elif p.body_mode == "multipart":
        lines.append("    CURLOPT_POSTFIELDS => [")
        lines += [f"        {_php(k)} => {_php(v)}," for k, v in p.fields]
        lines.append("    ],")
    elif p.body_mode == "file":
        lines.append(f"    CURLOPT_POSTFIELDS => file_get_contents({_php(p.path)}),")
    lines += [
        "]);",
        "",
        "$response = curl_exec($curl);",
        "$error = curl_error($curl);",
        "curl_close($curl);",
        "",
        "if ($error) {",
        "    echo 'Error: ' . $error;",
        "} else {",
        "    echo $response;",
        "}",
    ]
    return "\n".join(lines)
