"""Language registry: the single source of truth for toolchains.

Each supported language is one LanguageSpec data entry (no per-language
classes): adding a language means adding an entry to _LANGUAGE_TABLE.
Executables come from Settings so deployments can point at specific
toolchain installs via CODE_GRADER_*_BIN environment variables.

Example:
    ```python
    registry = get_registry()
    spec = registry.resolve("cpp")
    spec.requires_compilation  # True
    [s.id for s in registry.list_supported_languages()]
    ```
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from functools import cache
from typing import Any

from code_grader.exceptions import UnsupportedLanguageError
from code_grader.models import LanguageSpec
from code_grader.settings import Settings, get_settings

_JAVASCRIPT_TEMPLATE = """\
// Write your solution here
function solution(input) {
    // Your code here
    return input;
}

// Read input and call solution
const readline = require('readline');
const rl = readline.createInterface({
    input: process.stdin,
    output: process.stdout
});

rl.on('line', (line) => {
    const result = solution(line.trim());
    console.log(result);
    rl.close();
});
"""

_PYTHON_TEMPLATE = """\
# Write your solution here
def solution(input_str):
    # Your code here
    return input_str

# Read input and call solution
if __name__ == "__main__":
    import sys
    input_str = sys.stdin.read().strip()
    result = solution(input_str)
    print(result)
"""

_JAVA_TEMPLATE = """\
import java.util.*;

public class Solution {
    public static void main(String[] args) {
        Scanner scanner = new Scanner(System.in);
        String input = scanner.nextLine();
        String result = solution(input);
        System.out.println(result);
        scanner.close();
    }

    public static String solution(String input) {
        // Your code here
        return input;
    }
}
"""

_CPP_TEMPLATE = """\
#include <iostream>
#include <string>
using namespace std;

string solution(string input) {
    // Your code here
    return input;
}

int main() {
    string input;
    getline(cin, input);
    string result = solution(input);
    cout << result << endl;
    return 0;
}
"""

_C_TEMPLATE = """\
#include <stdio.h>
#include <string.h>

int main(void) {
    char input[4096];
    if (fgets(input, sizeof input, stdin) == NULL) {
        return 0;
    }
    input[strcspn(input, "\\n")] = '\\0';
    /* Your code here */
    printf("%s\\n", input);
    return 0;
}
"""


def _python(s: Settings) -> dict[str, Any]:
    return {
        "id": "python",
        "display_name": "Python",
        "version": "3",
        "file_extension": ".py",
        "source_filename": "solution.py",
        "run_command": (s.python_bin, "-I", "-B", "{source}"),
        "template": _PYTHON_TEMPLATE,
        "memory_error_markers": ("MemoryError",),
        "hello_world": 'print("Hello World")\n',
    }


def _javascript(s: Settings) -> dict[str, Any]:
    return {
        "id": "javascript",
        "display_name": "JavaScript",
        "version": "18",
        "file_extension": ".js",
        "source_filename": "solution.js",
        "run_command": (s.node_bin, "--max-old-space-size={memory_mb}", "{source}"),
        "template": _JAVASCRIPT_TEMPLATE,
        "memory_rlimit": False,
        "runtime_overhead_mb": 48,
        "memory_error_markers": ("JavaScript heap out of memory", "Reached heap limit"),
        "hello_world": 'console.log("Hello World");\n',
    }


def _java(s: Settings) -> dict[str, Any]:
    return {
        "id": "java",
        "display_name": "Java",
        "version": "17",
        "file_extension": ".java",
        "source_filename": "Solution.java",
        "compile_command": (s.javac_bin, "-J-Xmx512m", "-encoding", "UTF-8", "-d", "{workdir}", "{source}"),
        "run_command": (
            s.java_bin,
            "-Xmx{memory_mb}m",
            "-XX:+UseSerialGC",
            "-XX:TieredStopAtLevel=1",
            "-cp",
            "{workdir}",
            "Solution",
        ),
        "template": _JAVA_TEMPLATE,
        "memory_rlimit": False,
        "runtime_overhead_mb": 96,
        "memory_error_markers": ("java.lang.OutOfMemoryError",),
        "hello_world": (
            "public class Solution {\n"
            "    public static void main(String[] args) {\n"
            '        System.out.println("Hello World");\n'
            "    }\n"
            "}\n"
        ),
    }


def _cpp(s: Settings) -> dict[str, Any]:
    return {
        "id": "cpp",
        "display_name": "C++",
        "version": "17",
        "file_extension": ".cpp",
        "source_filename": "solution.cpp",
        "compile_command": (s.gxx_bin, "-std=c++17", "-O2", "-pipe", "-o", "{binary}", "{source}"),
        "run_command": ("{binary}",),
        "template": _CPP_TEMPLATE,
        "memory_error_markers": ("std::bad_alloc",),
        "hello_world": '#include <iostream>\nint main() { std::cout << "Hello World" << std::endl; }\n',
    }


def _c(s: Settings) -> dict[str, Any]:
    return {
        "id": "c",
        "display_name": "C",
        "version": "11",
        "file_extension": ".c",
        "source_filename": "solution.c",
        "compile_command": (s.gcc_bin, "-std=c11", "-O2", "-pipe", "-o", "{binary}", "{source}", "-lm"),
        "run_command": ("{binary}",),
        "template": _C_TEMPLATE,
        "hello_world": '#include <stdio.h>\nint main(void) { puts("Hello World"); return 0; }\n',
    }


_LANGUAGE_TABLE: tuple[Callable[[Settings], dict[str, Any]], ...] = (_javascript, _python, _java, _cpp, _c)

BINARY_NAME = "solution"
"""File name of the compiled artifact inside a workspace."""


class LanguageRegistry:
    """Immutable id -> LanguageSpec table."""

    def __init__(self, specs: list[LanguageSpec]) -> None:
        self._specs: dict[str, LanguageSpec] = {spec.id: spec for spec in specs}

    def resolve(self, language_id: str) -> LanguageSpec:
        """Look up a language (case-insensitive).

        Raises:
            UnsupportedLanguageError: Unknown language id
        """
        spec = self._specs.get(language_id.strip().lower()) if language_id else None
        if spec is None:
            raise UnsupportedLanguageError(language_id, supported=list(self._specs))
        return spec

    def list_supported_languages(self) -> list[LanguageSpec]:
        """All languages in registration order."""
        return list(self._specs.values())

    def __contains__(self, language_id: object) -> bool:
        return isinstance(language_id, str) and language_id.strip().lower() in self._specs

    def missing_toolchains(self) -> dict[str, list[str]]:
        """Executables not found on PATH, keyed by language id.

        Languages whose commands are all found are omitted.
        """
        missing: dict[str, list[str]] = {}
        for spec in self._specs.values():
            executables = [spec.run_command[0]]
            if spec.compile_command is not None:
                executables.insert(0, spec.compile_command[0])
            absent = [exe for exe in executables if "{" not in exe and shutil.which(exe) is None]
            if absent:
                missing[spec.id] = absent
        return missing


def build_registry(settings: Settings | None = None) -> LanguageRegistry:
    """Build the registry from the built-in table and toolchain settings."""
    settings = settings or get_settings()
    return LanguageRegistry([LanguageSpec(**entry(settings)) for entry in _LANGUAGE_TABLE])


@cache
def get_registry() -> LanguageRegistry:
    """Process-wide registry, built once from the environment at first use."""
    return build_registry()


def resolve(language_id: str) -> LanguageSpec:
    """Resolve a language id against the process-wide registry."""
    return get_registry().resolve(language_id)


def list_supported_languages() -> list[LanguageSpec]:
    """Languages of the process-wide registry."""
    return get_registry().list_supported_languages()
