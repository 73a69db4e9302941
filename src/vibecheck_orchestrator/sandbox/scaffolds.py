"""Execution scaffolds: instrumented runner sources per mode or syntax.

A scaffold wraps the candidate artifact in a runner that forwards every
console event and uncaught error to the host as one JSON line on the file
descriptor named by ``VIBECHECK_CHANNEL_FD``, tagged with ``VIBECHECK_RUN_ID``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Literal

SOURCE_PLACEHOLDER = "__VIBECHECK_SOURCE__"
PRELUDE_PLACEHOLDER = "__VIBECHECK_PRELUDE__"
CANVAS_WIDTH = 800
CANVAS_HEIGHT = 600

_PYTHON_PRELUDE = '''\
import builtins
import json
import logging
import os
import sys
import traceback
import warnings

_CHANNEL = os.fdopen(int(os.environ["VIBECHECK_CHANNEL_FD"]), "w", buffering=1, encoding="utf-8")
_RUN_ID = os.environ.get("VIBECHECK_RUN_ID", "")
_MAX_MESSAGE = 4000
_SOURCE = __VIBECHECK_SOURCE__
_ROOT = os.path.realpath(os.getcwd())

_DENIED_EVENTS = frozenset(
    {
        "socket.__new__",
        "socket.bind",
        "socket.connect",
        "socket.getaddrinfo",
        "subprocess.Popen",
        "os.system",
        "os.fork",
        "os.forkpty",
        "os.exec",
        "os.posix_spawn",
        "os.spawn",
        "os.kill",
        "os.killpg",
        "ctypes.dlopen",
    }
)
_DENIED_IMPORTS = frozenset({"_posixsubprocess", "_ctypes", "_socket", "_multiprocessing"})
_PATH_EVENTS = frozenset(
    {
        "os.chmod",
        "os.chown",
        "os.link",
        "os.mkdir",
        "os.remove",
        "os.rename",
        "os.rmdir",
        "os.symlink",
        "os.truncate",
        "os.utime",
        "shutil.copyfile",
        "shutil.copytree",
        "shutil.move",
        "shutil.rmtree",
    }
)
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC


def _emit(level, message):
    try:
        payload = {
            "source": "renderer-console",
            "channel": _RUN_ID,
            "level": level,
            "message": str(message)[:_MAX_MESSAGE],
        }
        _CHANNEL.write(json.dumps(payload) + "\\n")
    except (OSError, ValueError):
        pass


def _outside_root(path):
    if not isinstance(path, (str, bytes, os.PathLike)):
        return False
    resolved = os.path.realpath(os.fsdecode(path))
    return os.path.commonpath([_ROOT, resolved]) != _ROOT


def _guard(event, args):
    if event in _DENIED_EVENTS:
        raise PermissionError(f"sandbox denied {event}")
    if event == "import" and args[0] in _DENIED_IMPORTS:
        raise PermissionError(f"sandbox denied import of {args[0]}")
    if event == "open":
        path, mode, flags = args
        if isinstance(mode, str):
            writing = any(flag in mode for flag in "wax+")
        else:
            writing = bool(flags & _WRITE_FLAGS)
        if writing and _outside_root(path):
            raise PermissionError(f"sandbox denied write to {os.fsdecode(path)}")
    elif event in _PATH_EVENTS and any(_outside_root(arg) for arg in args):
        raise PermissionError(f"sandbox denied {event} outside the working directory")


'''

# Runs the artifact as a script; installs the guard only after the runner's own imports.
_PYTHON_RUNNER = _PYTHON_PRELUDE + '''\
_print = builtins.print


def _console_print(*args, sep=" ", end="\\n", file=None, flush=False):
    _print(*args, sep=sep, end=end, file=file, flush=flush)
    level = "error" if file is sys.stderr else "log"
    _emit(level, (sep or " ").join(str(arg) for arg in args))


def _show_warning(message, category, filename, lineno, file=None, line=None):
    _emit("warn", f"{category.__name__}: {message} at {os.path.basename(filename)}:{lineno}")


class _ChannelHandler(logging.Handler):
    def emit(self, record):
        if record.levelno >= logging.ERROR:
            level = "error"
        elif record.levelno >= logging.WARNING:
            level = "warn"
        else:
            level = "log"
        _emit(level, self.format(record))


def _describe(exc):
    frames = [frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename == "artifact.py"]
    where = f" at artifact.py:{frames[-1].lineno}" if frames else ""
    return f"Uncaught {type(exc).__name__}: {exc}{where}"


builtins.print = _console_print
warnings.showwarning = _show_warning
logging.getLogger().addHandler(_ChannelHandler())
sys.addaudithook(_guard)

try:
    exec(compile(_SOURCE, "artifact.py", "exec"), {"__name__": "__main__", "__builtins__": builtins})
except SystemExit as exc:
    if exc.code not in (None, 0):
        _emit("error", f"Process exited with status {exc.code}")
except SyntaxError as exc:
    _emit("error", f"Uncaught SyntaxError: {exc.msg} at artifact.py:{exc.lineno}:{exc.offset}")
except BaseException as exc:
    _emit("error", _describe(exc))
finally:
    logging.shutdown()
    _CHANNEL.close()
'''

# SVG has no script to run; a well-formedness and root-element check stands in.
_SVG_CHECKER = _PYTHON_PRELUDE + '''\
from xml.etree import ElementTree

sys.addaudithook(_guard)

try:
    root = ElementTree.fromstring(_SOURCE)
except (ElementTree.ParseError, ValueError) as exc:
    _emit("error", f"Uncaught ParseError: {exc}")
else:
    tag = root.tag.rsplit("}", 1)[-1] if isinstance(root.tag, str) else ""
    if tag != "svg":
        _emit("error", f"Root element is <{tag}>, expected <svg>")
finally:
    _CHANNEL.close()
'''

_NODE_RUNNER = '''\
"use strict";
const fs = require("fs");
const vm = require("vm");

const CHANNEL_FD = Number(process.env.VIBECHECK_CHANNEL_FD);
const RUN_ID = process.env.VIBECHECK_RUN_ID || "";
const MAX_MESSAGE = 4000;
const SOURCE = __VIBECHECK_SOURCE__;

function emit(level, message) {
  try {
    const payload = { source: "renderer-console", channel: RUN_ID, level, message: String(message).slice(0, MAX_MESSAGE) };
    fs.writeSync(CHANNEL_FD, JSON.stringify(payload) + "\\n");
  } catch (e) {
    // channel closed by the host
  }
}

function format(args) {
  return args.map((arg) => {
    if (arg instanceof Error) return arg.stack || String(arg);
    if (typeof arg === "object" && arg !== null) {
      try {
        return JSON.stringify(arg, (key, value) => (typeof value === "bigint" ? value.toString() : value), 2);
      } catch (e) {
        return String(arg);
      }
    }
    return String(arg);
  }).join(" ");
}

function describe(error) {
  if (error instanceof Error) {
    const match = String(error.stack || "").match(/artifact\\.js:(\\d+)(?::(\\d+))?/);
    const where = match ? ` at artifact.js:${match[1]}${match[2] ? ":" + match[2] : ""}` : "";
    return `Uncaught ${error.name || "Error"}: ${error.message}${where}`;
  }
  return `Uncaught ${String(error)}`;
}

for (const level of ["log", "info", "warn", "error", "debug", "trace"]) {
  console[level] = (...args) => emit(level === "trace" ? "log" : level, format(args));
}
process.on("uncaughtException", (error) => emit("error", describe(error)));
process.on("unhandledRejection", (reason) => emit("error", describe(reason)));

// The permission model does not cover the network; take away every route to it.
function revoke(target, name) {
  try {
    Object.defineProperty(target, name, { value: undefined, writable: false, configurable: false });
  } catch (e) {
    // already locked down
  }
}
for (const name of ["fetch", "WebSocket", "EventSource", "XMLHttpRequest"]) {
  revoke(globalThis, name);
}
for (const name of ["binding", "_linkedBinding", "dlopen", "getBuiltinModule", "mainModule"]) {
  revoke(process, name);
}

__VIBECHECK_PRELUDE__

try {
  vm.runInThisContext(SOURCE, { filename: "artifact.js" });
} catch (error) {
  emit("error", describe(error));
}
'''

_CANVAS_PRELUDE = f'''\
const noop = () => undefined;
const canvas = {{
  width: {CANVAS_WIDTH},
  height: {CANVAS_HEIGHT},
  style: {{}},
  addEventListener: noop,
  removeEventListener: noop,
  getBoundingClientRect: () => ({{ left: 0, top: 0, width: {CANVAS_WIDTH}, height: {CANVAS_HEIGHT} }}),
}};
const imageData = (...args) => {{
  const [w, h] = args.length >= 4 ? [args[2], args[3]] : [args[0], args[1]];
  const width = Math.max(0, Number(w) || 0);
  const height = Math.max(0, Number(h) || 0);
  return {{ width, height, data: new Uint8ClampedArray(width * height * 4) }};
}};
const ctx = new Proxy({{}}, {{
  get(target, prop) {{
    if (prop in target) return target[prop];
    if (prop === "canvas") return canvas;
    if (prop === "measureText") return (text) => ({{ width: String(text).length * 7 }});
    if (prop === "getImageData" || prop === "createImageData") return imageData;
    if (prop === "createLinearGradient" || prop === "createRadialGradient" || prop === "createPattern") {{
      return () => ({{ addColorStop: noop }});
    }}
    return noop;
  }},
  set(target, prop, value) {{
    target[prop] = value;
    return true;
  }},
}});
canvas.getContext = () => ctx;
globalThis.window = globalThis;
globalThis.canvas = canvas;
globalThis.ctx = ctx;
globalThis.document = {{
  body: {{ appendChild: noop, style: {{}} }},
  getElementById: () => canvas,
  querySelector: () => canvas,
  createElement: () => canvas,
  addEventListener: noop,
}};
globalThis.addEventListener = noop;
globalThis.removeEventListener = noop;
globalThis.innerWidth = {CANVAS_WIDTH};
globalThis.innerHeight = {CANVAS_HEIGHT};
globalThis.requestAnimationFrame = (callback) => setTimeout(() => callback(performance.now()), 16);
globalThis.cancelAnimationFrame = (handle) => clearTimeout(handle);
'''


@dataclass(frozen=True)
class Scaffold:
    name: str
    runtime: Literal["python", "node"]
    filename: str
    template: str
    wrap: Callable[[str], str] | None = None

    def render(self, artifact: str) -> str:
        source = self.wrap(artifact) if self.wrap is not None else artifact
        literal = repr(source) if self.runtime == "python" else json.dumps(source)
        return self.template.replace(SOURCE_PLACEHOLDER, literal, 1)


def _wrap_in_function(code: str) -> str:
    return f"(function() {{\n{code}\n}})();"


PYTHON_SCAFFOLD = Scaffold(
    name="python",
    runtime="python",
    filename="runner.py",
    template=_PYTHON_RUNNER,
)
JAVASCRIPT_SCAFFOLD = Scaffold(
    name="javascript",
    runtime="node",
    filename="runner.cjs",
    template=_NODE_RUNNER.replace(PRELUDE_PLACEHOLDER, ""),
)
CANVAS_SCAFFOLD = Scaffold(
    name="canvas",
    runtime="node",
    filename="runner.cjs",
    template=_NODE_RUNNER.replace(PRELUDE_PLACEHOLDER, _CANVAS_PRELUDE),
    wrap=_wrap_in_function,
)
SVG_SCAFFOLD = Scaffold(
    name="svg",
    runtime="python",
    filename="check_svg.py",
    template=_SVG_CHECKER,
)

SCAFFOLDS: dict[str, Scaffold] = {
    "python": PYTHON_SCAFFOLD,
    "javascript": JAVASCRIPT_SCAFFOLD,
    "canvas": CANVAS_SCAFFOLD,
    "svg": SVG_SCAFFOLD,
}

# Profiles have no scaffold of their own; they fall back to their syntax.
SYNTAX_SCAFFOLDS: dict[str, Scaffold] = {
    "python": PYTHON_SCAFFOLD,
    "javascript": JAVASCRIPT_SCAFFOLD,
}


def scaffold_for(mode_id: str, syntax: str | None) -> Scaffold | None:
    return SCAFFOLDS.get(mode_id) or SYNTAX_SCAFFOLDS.get(syntax or "")
