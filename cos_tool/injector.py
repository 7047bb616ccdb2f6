"""
Label matcher injection.

Adds a fixed set of equality matchers to every selector of an expression
tree, leaving matchers that are already present untouched.
"""

import logging
from typing import List, Mapping

from .models import Matcher, MatchType, Node, SelectorNode

logger = logging.getLogger(__name__)


class MatcherInjector:
    """Injects label matchers into every selector node of a tree.

    Args:
        matchers: Label name to value; iterated in name order so repeated
            injections always build the same tree
    """

    def __init__(self, matchers: Mapping[str, str]):
        self.matchers = sorted(matchers.items())

    def inject(self, root: Node) -> int:
        """Walk ``root`` depth first and inject into each selector.

        Returns:
            The number of selector nodes visited
        """
        visited = self._visit(root)
        logger.debug("Injected %d matcher(s) into %d selector(s)", len(self.matchers), visited)
        return visited

    def _visit(self, node: Node) -> int:
        visited = 0
        if isinstance(node, SelectorNode):
            self._inject_into(node)
            visited += 1
        for child in node.children():
            visited += self._visit(child)
        return visited

    def _inject_into(self, selector: SelectorNode) -> None:
        missing: List[Matcher] = [
            Matcher(name, MatchType.EQUAL, value)
            for name, value in self.matchers
            if not selector.has_label(name)
        ]
        if missing:
            selector.append_matchers(missing)


def inject_matchers(root: Node, matchers: Mapping[str, str]) -> Node:
    """Inject ``matchers`` into ``root`` in place and return it."""
    MatcherInjector(matchers).inject(root)
    return root
