import re
from typing import List, NamedTuple

HUNK_NEW_START = re.compile(r"\+(\d+)")


class AddedLine(NamedTuple):
    line_number: int
    content: str


class DiffParser:
    """Maps a unified-diff patch to the lines it adds, numbered in the new file.

    Context lines advance the new-file counter along with added lines; removed
    lines and "\\ No newline" markers do not. A hunk header whose new-file start
    cannot be read leaves the counter where it was.
    """

    def parse(self, patch: str) -> List[AddedLine]:
        added: List[AddedLine] = []
        current_line = 0
        in_hunk = False

        for line in patch.split("\n"):
            if line.startswith("@@"):
                in_hunk = True
                match = HUNK_NEW_START.search(line)
                if match:
                    current_line = int(match.group(1)) - 1
                continue

            # diff --git / --- / +++ file headers precede the first hunk
            if not in_hunk:
                continue

            if line.startswith("+"):
                current_line += 1
                added.append(AddedLine(current_line, line[1:]))
            elif line.startswith(" ") or line == "":
                current_line += 1

        return added
