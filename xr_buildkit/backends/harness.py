"""Sandbox-side bootstrap script and the no-compiler fallback transform."""

from __future__ import annotations

import re

from xr_buildkit.models.framework import FrameworkKind

BUILD_FUNCTION = "buildWithEsbuild"
RESULT_CHANNEL = "buildResult"
FALLBACK_WARNING = "Using fallback build - limited functionality"

READY_PROBE = f"typeof window.{BUILD_FUNCTION} === 'function'"
COMPILER_READY_PROBE = "window.esbuildReady === true"
COMPILER_ERROR_PROBE = "typeof window.esbuildError === 'string'"

# Evaluated once in a fresh sandbox. The host must provide
# window.__buildkitPost(name, jsonString) as the sandbox-to-host channel.
BOOTSTRAP_SCRIPT = r"""
(function () {
  window.esbuildReady = false;

  function compiler() {
    return window.esbuild || window.esbuild_wasm || null;
  }

  function post(result) {
    window.__buildkitPost('%(channel)s', JSON.stringify(result));
  }

  function virtualFs(files) {
    return {
      name: 'virtual-fs',
      setup(build) {
        build.onResolve({ filter: /^\.{1,2}\// }, (args) => {
          const base = (args.importer || '/src/index').split('/').slice(0, -1);
          for (const part of args.path.split('/')) {
            if (part === '..') base.pop();
            else if (part !== '.') base.push(part);
          }
          const resolved = base.join('/');
          for (const candidate of [resolved, resolved + '.tsx', resolved + '.ts', resolved + '.jsx', resolved + '.js']) {
            if (files[candidate] !== undefined) return { path: candidate, namespace: 'virtual' };
          }
          return undefined;
        });
        build.onLoad({ filter: /.*/, namespace: 'virtual' }, (args) => {
          const ext = args.path.split('.').pop();
          const loader = ['tsx', 'ts', 'jsx', 'js'].includes(ext) ? ext : 'js';
          return { contents: files[args.path], loader };
        });
      },
    };
  }

  window.initializeCompiler = async function (wasmURL) {
    const esbuild = compiler();
    if (!esbuild) {
      window.esbuildError = 'Compiler script did not register a global';
      return;
    }
    try {
      await esbuild.initialize({ wasmURL, worker: false });
      window.esbuildReady = true;
    } catch (error) {
      window.esbuildError = String((error && error.message) || error);
    }
  };

  window.%(build)s = async function (request) {
    const started = Date.now();
    try {
      const esbuild = compiler();
      if (!esbuild || !window.esbuildReady) throw new Error('Compiler not initialized');
      const options = Object.assign({}, request.options);
      const loader = options.loader;
      delete options.loader;
      const alias = options.alias || {};
      delete options.alias;
      const files = Object.assign({}, request.extraFiles);
      files[request.entryPath] = request.entryCode;
      options.stdin = { contents: request.entryCode, loader, resolveDir: '/src', sourcefile: request.entryPath };
      options.plugins = [
        {
          name: 'vendor-alias',
          setup(build) {
            build.onResolve({ filter: /^[^./]/ }, (args) => {
              for (const name of Object.keys(alias)) {
                if (args.path === name || args.path.startsWith(name + '/')) {
                  return { path: alias[name], external: true };
                }
              }
              return undefined;
            });
          },
        },
        virtualFs(files),
      ];
      const result = await esbuild.build(options);
      const bundleCode = (result.outputFiles && result.outputFiles[0] && result.outputFiles[0].text) || '';
      post({
        buildId: request.buildId,
        success: true,
        bundleCode,
        warnings: (result.warnings || []).map((w) => w.text),
        errors: (result.errors || []).map((e) => e.text),
        bytes: new TextEncoder().encode(bundleCode).length,
        durationMs: Date.now() - started,
      });
    } catch (error) {
      const messages = (error && error.errors && error.errors.map((e) => e.text)) || [];
      post({
        buildId: request.buildId,
        success: false,
        bundleCode: null,
        warnings: [],
        errors: messages.length ? messages : [String((error && error.message) || error || 'Unknown build error')],
        bytes: 0,
        durationMs: Date.now() - started,
      });
    }
  };
})();
undefined;
""" % {"channel": RESULT_CHANNEL, "build": BUILD_FUNCTION}


_IMPORT_RE = re.compile(
    r"""^[ \t]*import\s+(?:[\s\S]*?\s+from\s+)?['"][^'"]*['"][ \t]*;?[ \t]*\r?\n?""",
    re.MULTILINE,
)
_EXPORT_DEFAULT_RE = re.compile(r"\bexport\s+default\s+")
_EXPORT_RE = re.compile(r"\bexport\s+")

# Globals the rendering sandbox exposes for each framework
_FALLBACK_GLOBALS: dict[FrameworkKind, str] = {
    FrameworkKind.REACT_THREE_FIBER: """\
  const React = window.React;
  const { createRoot } = window.ReactDOM || {};
  const { Canvas, useFrame, useThree } = window.ReactThreeFiber || {};
  const { OrbitControls } = window.Drei || {};
  const THREE = window.THREE;""",
    FrameworkKind.REACTYLON: """\
  const React = window.React;
  const { createRoot } = window.ReactDOM || {};
  const BABYLON = window.BABYLON;
  const { Engine, Scene } = window.Reactylon || {};""",
    FrameworkKind.BABYLON: "  const BABYLON = window.BABYLON;",
    FrameworkKind.AFRAME: "  const AFRAME = window.AFRAME;",
}


def strip_modules(source: str) -> str:
    """Drop import statements and export keywords."""
    code = _IMPORT_RE.sub("", source)
    code = _EXPORT_DEFAULT_RE.sub("", code)
    return _EXPORT_RE.sub("", code)


def fallback_transform(source: str, framework: FrameworkKind) -> str:
    """Best-effort rewrite that lets simple component code run without a compiler.

    Not a compiler: JSX and TypeScript syntax are left untouched.
    """
    body = strip_modules(source).strip("\n")
    indented = "\n".join(("    " + line) if line else "" for line in body.splitlines())
    return (
        "(function () {\n"
        f"{_FALLBACK_GLOBALS[framework]}\n"
        "  try {\n"
        f"{indented}\n"
        "  } catch (error) {\n"
        "    console.error('Fallback execution error:', error);\n"
        "  }\n"
        "})();\n"
    )
