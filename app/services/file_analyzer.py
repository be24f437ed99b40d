import os
import re
from typing import List, Optional

from app.models.schemas import ChangedFile, CodeIssue, FileAnalysis
from app.services.complexity import ComplexityScorer
from app.services.diff_parser import DiffParser
from app.services.issue_detector import IssueDetector

LANGUAGES = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".php": "php",
    ".rb": "ruby",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".cpp": "cpp",
    ".c": "c",
    ".cs": "csharp",
    ".dart": "dart",
}

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".pdf", ".zip",
    ".tar", ".gz", ".exe", ".dll", ".so", ".dylib",
}

IGNORE_PATTERNS = [
    re.compile(r"node_modules"),
    re.compile(r"\.min\."),
    re.compile(r"\.bundle\."),
    re.compile(r"\.generated\."),
    re.compile(r"dist/"),
    re.compile(r"build/"),
    re.compile(r"coverage/"),
    re.compile(r"\.git/"),
    re.compile(r"vendor/"),
    re.compile(r"packages/.*/lib/"),
]

CONFIG_FILES = {
    "Dockerfile",
    "Makefile",
    "package.json",
    "tsconfig.json",
    "webpack.config.js",
    ".eslintrc",
    ".babelrc",
    "docker-compose.yml",
}


class FileAnalyzer:
    def __init__(
        self,
        parser: Optional[DiffParser] = None,
        detector: Optional[IssueDetector] = None,
        scorer: Optional[ComplexityScorer] = None,
    ) -> None:
        self.parser = parser or DiffParser()
        self.detector = detector or IssueDetector()
        self.scorer = scorer or ComplexityScorer()

    def should_review(self, filename: str, status: str) -> bool:
        if status == "removed":
            return False
        ext = self._extension(filename)
        if ext in BINARY_EXTENSIONS:
            return False
        if any(pattern.search(filename) for pattern in IGNORE_PATTERNS):
            return False
        if ext not in LANGUAGES:
            return not ext or self.is_config_file(filename)
        return True

    def is_config_file(self, filename: str) -> bool:
        basename = os.path.basename(filename)
        return basename in CONFIG_FILES or basename.startswith(".")

    def language_for(self, filename: str) -> str:
        return LANGUAGES.get(self._extension(filename), "unknown")

    def analyze_file(self, file: ChangedFile) -> FileAnalysis:
        should_review = self.should_review(file.filename, file.status)
        language = self.language_for(file.filename)
        issues: List[CodeIssue] = []
        if should_review and file.patch:
            for added in self.parser.parse(file.patch):
                issues.extend(self.detector.check_line(added.content, added.line_number, language))

        return FileAnalysis(
            filename=file.filename,
            language=language,
            additions=file.additions,
            deletions=file.deletions,
            patch=file.patch or "",
            should_review=should_review,
            issues=issues,
        )

    def complexity_score(self, patch: Optional[str]) -> int:
        return self.scorer.score(patch or "")

    def _extension(self, filename: str) -> str:
        return os.path.splitext(filename)[1].lower()
