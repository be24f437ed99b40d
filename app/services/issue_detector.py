"""Line-level pattern rules.

Rules are plain functions ``(line, line_number) -> List[CodeIssue]``. Common
rules run on every line; language rules are looked up in ``LANGUAGE_RULES`` by
the language tag FileAnalyzer detected. Adding a language means registering
functions with ``@language_rule(...)``; the detector itself does not change.
"""

import re
from typing import Callable, Dict, List, Optional, Tuple

from app.models.schemas import CodeIssue

Rule = Callable[[str, int], List[CodeIssue]]

COMMON_RULES: List[Rule] = []
LANGUAGE_RULES: Dict[str, List[Rule]] = {}

DEFAULT_COMMENT_MARKERS: Tuple[str, ...] = ("//", "#")
COMMENT_MARKERS: Dict[str, Tuple[str, ...]] = {
    "javascript": ("//", "/*"),
    "typescript": ("//", "/*"),
    "python": ("#",),
    "ruby": ("#",),
    "java": ("//", "/*"),
    "kotlin": ("//", "/*"),
    "scala": ("//", "/*"),
    "go": ("//", "/*"),
    "rust": ("//", "/*"),
    "c": ("//", "/*"),
    "cpp": ("//", "/*"),
    "csharp": ("//", "/*"),
    "swift": ("//", "/*"),
    "dart": ("//", "/*"),
    "php": ("//", "#", "/*"),
}
# " * text" and " */" continue a block comment; in C and C++ a leading "*" is a dereference
BLOCK_CONTINUATION = re.compile(r"\*(?:\s|/|$)")
BLOCK_CONTINUATION_LANGUAGES = frozenset(
    {"javascript", "typescript", "java", "kotlin", "scala", "csharp", "php"}
)

SECRET_PATTERNS = [
    re.compile(r"password\s*[=:]\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*[=:]\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"secret\s*[=:]\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"token\s*[=:]\s*[\"'][^\"']+[\"']", re.IGNORECASE),
]
TODO_PATTERN = re.compile(r"TODO|FIXME|HACK", re.IGNORECASE)

CONSOLE_CALL = re.compile(r"console\.(log|debug|trace)\s*\(")
LOOSE_EQUALITY = re.compile(r"[^=!]==[^=]")
VAR_DECLARATION = re.compile(r"\bvar\s+\w+")
EVAL_CALL = re.compile(r"\beval\s*\(")

PRINT_CALL = re.compile(r"\bprint\s*\(")
BARE_EXCEPT = re.compile(r"\bexcept\s*:")


def common_rule(func: Rule) -> Rule:
    COMMON_RULES.append(func)
    return func


def language_rule(*languages: str) -> Callable[[Rule], Rule]:
    def register(func: Rule) -> Rule:
        for language in languages:
            LANGUAGE_RULES.setdefault(language, []).append(func)
        return func

    return register


@common_rule
def hardcoded_credentials(line: str, line_number: int) -> List[CodeIssue]:
    # one issue per matching pattern: "api_key = token = '...'" reports twice
    return [
        CodeIssue(
            line=line_number,
            severity="critical",
            type="security",
            message="Potential hardcoded credential detected",
            suggestion="Use environment variables or secure credential storage",
            rule="no-hardcoded-credentials",
        )
        for pattern in SECRET_PATTERNS
        if pattern.search(line)
    ]


@common_rule
def todo_comments(line: str, line_number: int) -> List[CodeIssue]:
    if not TODO_PATTERN.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="low",
            type="quality",
            message="TODO comment found",
            suggestion="Consider creating an issue or completing the task",
            rule="no-todo-comments",
        )
    ]


@language_rule("javascript", "typescript")
def console_calls(line: str, line_number: int) -> List[CodeIssue]:
    match = CONSOLE_CALL.search(line)
    if not match:
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="medium",
            type="quality",
            message=f"console.{match.group(1)} statement found",
            suggestion="Remove the console call or use a proper logging library",
            rule="no-console",
        )
    ]


@language_rule("javascript", "typescript")
def loose_equality(line: str, line_number: int) -> List[CodeIssue]:
    if not LOOSE_EQUALITY.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="medium",
            type="quality",
            message="Use strict equality (===) instead of loose equality (==)",
            suggestion="Replace == with ===",
            rule="strict-equality",
        )
    ]


@language_rule("javascript", "typescript")
def var_declarations(line: str, line_number: int) -> List[CodeIssue]:
    if not VAR_DECLARATION.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="low",
            type="quality",
            message="Use let or const instead of var",
            suggestion="Replace var with let or const",
            rule="no-var",
        )
    ]


@language_rule("javascript", "typescript")
def eval_calls(line: str, line_number: int) -> List[CodeIssue]:
    if not EVAL_CALL.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="high",
            type="security",
            message="eval() usage detected - potential security risk",
            suggestion="Avoid using eval(), consider safer alternatives",
            rule="no-eval",
        )
    ]


@language_rule("python")
def print_calls(line: str, line_number: int) -> List[CodeIssue]:
    if not PRINT_CALL.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="low",
            type="quality",
            message="Print statement found",
            suggestion="Use logging instead of print for production code",
            rule="no-print",
        )
    ]


@language_rule("python")
def bare_except(line: str, line_number: int) -> List[CodeIssue]:
    if not BARE_EXCEPT.search(line):
        return []
    return [
        CodeIssue(
            line=line_number,
            severity="medium",
            type="quality",
            message="Bare except clause",
            suggestion="Catch specific exceptions instead of using bare except",
            rule="specific-exceptions",
        )
    ]


class IssueDetector:
    def __init__(
        self,
        common_rules: Optional[List[Rule]] = None,
        language_rules: Optional[Dict[str, List[Rule]]] = None,
    ) -> None:
        self.common_rules = COMMON_RULES if common_rules is None else common_rules
        self.language_rules = LANGUAGE_RULES if language_rules is None else language_rules

    def is_comment(self, line: str, language: str) -> bool:
        stripped = line.strip()
        if stripped.startswith(COMMENT_MARKERS.get(language, DEFAULT_COMMENT_MARKERS)):
            return True
        return language in BLOCK_CONTINUATION_LANGUAGES and BLOCK_CONTINUATION.match(stripped) is not None

    def check_line(self, line: str, line_number: int, language: str) -> List[CodeIssue]:
        if not line.strip() or self.is_comment(line, language):
            return []

        issues: List[CodeIssue] = []
        for rule in self.common_rules:
            issues.extend(rule(line, line_number))
        for rule in self.language_rules.get(language, []):
            issues.extend(rule(line, line_number))
        return issues
