"""Minimal line-delimited JSON-RPC MCP server used as a test child.

Behavior is controlled through environment variables:

    FAKE_MCP_MODE   "normal" (default), "silent" (never answers) or
                    "exit" (exits with code 1 after FAKE_MCP_EXIT_AFTER seconds)
    FAKE_MCP_NAME   serverInfo name (default "fake-server")
    FAKE_MCP_NOISY  when "1", writes a non-JSON line to stdout on startup
    FAKE_MCP_MARKER path of a marker file; the first process to start creates
                    it and answers normally, later processes are silent
"""

import itertools
import json
import os
import sys
import threading
import time

MODE = os.environ.get("FAKE_MCP_MODE", "normal")
MARKER = os.environ.get("FAKE_MCP_MARKER")
NAME = os.environ.get("FAKE_MCP_NAME", "fake-server")

_write_lock = threading.Lock()
_client_ids = itertools.count(1000)
_client_waiters: dict[int, tuple[threading.Event, list]] = {}

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the text argument",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    },
    {"name": "whoami", "description": "Return the process id", "inputSchema": {"type": "object"}},
    {
        "name": "delay",
        "description": "Answer after a delay",
        "inputSchema": {
            "type": "object",
            "properties": {"seconds": {"type": "number"}, "text": {"type": "string"}},
        },
    },
    {"name": "crash", "description": "Exit immediately", "inputSchema": {"type": "object"}},
    {"name": "env", "description": "Read an environment variable", "inputSchema": {"type": "object"}},
    {"name": "ask_client", "description": "Ask the client for roots", "inputSchema": {"type": "object"}},
]


def send(message):
    data = json.dumps(message) + "\n"
    with _write_lock:
        sys.stdout.write(data)
        sys.stdout.flush()


def text_result(text):
    return {"content": [{"type": "text", "text": text}], "isError": False}


def ask_client(method, params=None):
    request_id = next(_client_ids)
    event = threading.Event()
    box: list = []
    _client_waiters[request_id] = (event, box)
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    send(message)
    event.wait(10)
    return box[0] if box else {"error": "no response"}


def call_tool(request_id, params):
    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "echo":
        return text_result(str(arguments.get("text", "")))
    if name == "whoami":
        return text_result(str(os.getpid()))
    if name == "delay":
        time.sleep(float(arguments.get("seconds", 0)))
        return text_result(str(arguments.get("text", "done")))
    if name == "crash":
        sys.stdout.flush()
        os._exit(3)
    if name == "env":
        return text_result(os.environ.get(str(arguments.get("name", "")), ""))
    if name == "ask_client":
        return text_result(json.dumps(ask_client("roots/list")))
    raise KeyError(name)


def handle_request(message):
    request_id = message["id"]
    method = message["method"]
    params = message.get("params") or {}

    if method == "initialize":
        result = {
            "protocolVersion": params.get("protocolVersion", "2024-11-05"),
            "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
            "serverInfo": {"name": NAME, "version": "1.0.0"},
            "instructions": "Fake server for tests.",
        }
    elif method == "tools/list":
        result = {"tools": TOOLS}
    elif method == "tools/call":
        try:
            result = call_tool(request_id, params)
        except KeyError:
            send({
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": -32602, "message": f"Unknown tool: {params.get('name')}"},
            })
            return
    elif method == "resources/list":
        result = {"resources": [{"uri": "fake://readme", "name": "readme"}]}
    elif method == "resources/read":
        result = {"contents": [{"uri": params.get("uri"), "text": "hello from fake"}]}
    elif method == "prompts/list":
        result = {"prompts": [{"name": "greet", "arguments": [{"name": "who"}]}]}
    elif method == "prompts/get":
        who = (params.get("arguments") or {}).get("who", "world")
        result = {
            "messages": [
                {"role": "user", "content": {"type": "text", "text": f"Hello {who}"}}
            ]
        }
    elif method == "completion/complete":
        result = {"completion": {"values": ["alpha"], "hasMore": False}}
    elif method == "ping":
        result = {}
    else:
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32601, "message": f"Method not found: {method}"},
        })
        return
    send({"jsonrpc": "2.0", "id": request_id, "result": result})


def main():
    global MODE
    if MARKER:
        if os.path.exists(MARKER):
            MODE = "silent"
        else:
            open(MARKER, "w").close()
    if MODE == "exit":
        time.sleep(float(os.environ.get("FAKE_MCP_EXIT_AFTER", "0")))
        sys.exit(1)
    if os.environ.get("FAKE_MCP_NOISY") == "1":
        send_raw = "this is not json"
        with _write_lock:
            sys.stdout.write(send_raw + "\n")
            sys.stdout.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        if "method" not in message:
            waiter = _client_waiters.pop(message.get("id"), None)
            if waiter is not None:
                event, box = waiter
                box.append(message.get("result", message.get("error")))
                event.set()
            continue
        if MODE == "silent" or "id" not in message:
            continue
        threading.Thread(target=handle_request, args=(message,), daemon=True).start()


if __name__ == "__main__":
    main()
