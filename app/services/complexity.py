import re

OPENERS = re.compile(r"[{(\[]|if|for|while|function|class")
CLOSERS = re.compile(r"[})\]]")


class ComplexityScorer:
    """Crude 0-10 score: one point per ten added lines plus the deepest nesting reached.

    Keywords are matched as substrings ("notify" counts as an "if"); existing
    scores depend on that, so keep it.
    """

    max_score = 10
    lines_per_point = 10

    def score(self, patch: str) -> int:
        added = [line[1:] for line in patch.split("\n") if line.startswith("+")]
        return min(self.max_score, len(added) // self.lines_per_point + self.nesting_depth(added))

    def nesting_depth(self, added_lines) -> int:
        max_depth = 0
        depth = 0
        for content in added_lines:
            depth += len(OPENERS.findall(content)) - len(CLOSERS.findall(content))
            max_depth = max(max_depth, depth)
        return max(0, max_depth)
