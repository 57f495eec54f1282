# File: tests/fixtures/fake_r_server.py

"""Stand-in for `R -e languageserver::run(...)` used by integration tests.

Launched as `python fake_r_server.py [flags] --quiet --slave -e <expr>`.
When <expr> contains `port=N` it connects back to 127.0.0.1:N, otherwise it
talks LSP on stdin/stdout.

Flags:
    --no-connect   exit with code 2 before connecting
    --stderr TEXT  write TEXT to stderr once started
    --long-stderr N  write a line of N "x" characters to stderr, then
                     the line "after-long-line"
"""

import json
import os
import re
import socket
import sys


def read_message(stream):
    content_length = None
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.decode("ascii").partition(":")
        if name.lower() == "content-length":
            content_length = int(value.strip())
    return json.loads(stream.read(content_length).decode("utf-8"))


def write_message(stream, message):
    body = json.dumps(message).encode("utf-8")
    stream.write(b"Content-Length: " + str(len(body)).encode("ascii") + b"\r\n\r\n")
    stream.write(body)
    stream.flush()


def main(argv):
    expr = argv[argv.index("-e") + 1] if "-e" in argv else ""
    if "--stderr" in argv:
        sys.stderr.write(argv[argv.index("--stderr") + 1] + "\n")
        sys.stderr.flush()
    if "--long-stderr" in argv:
        size = int(argv[argv.index("--long-stderr") + 1])
        sys.stderr.write("x" * size + "\n")
        sys.stderr.write("after-long-line\n")
        sys.stderr.flush()
    if "--no-connect" in argv:
        return 2

    match = re.search(r"port=(\d+)", expr)
    if match:
        sock = socket.create_connection(("127.0.0.1", int(match.group(1))))
        rfile = sock.makefile("rb")
        wfile = sock.makefile("wb")
    else:
        rfile = sys.stdin.buffer
        wfile = sys.stdout.buffer

    while True:
        message = read_message(rfile)
        if message is None:
            return 0
        method = message.get("method")
        if method == "initialize":
            write_message(
                wfile,
                {
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "result": {
                        "capabilities": {"hoverProvider": True},
                        "serverInfo": {
                            "argv": argv,
                            "cwd": os.getcwd(),
                            "lang": os.environ.get("LANG"),
                            "rootUri": message["params"].get("rootUri"),
                        },
                    },
                },
            )
        elif method == "test/crash":
            os._exit(3)
        elif method == "exit":
            return 0
        elif method == "shutdown":
            write_message(wfile, {"jsonrpc": "2.0", "id": message["id"], "result": None})
        elif "id" in message:
            write_message(
                wfile,
                {"jsonrpc": "2.0", "id": message["id"], "result": {"echo": method}},
            )


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
