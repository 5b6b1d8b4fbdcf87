"""Comment forest built from a flat, time-ordered comment list.

The forest is an arena: every comment lives once in an id-keyed mapping and
the tree shape is expressed purely as tuples of child ids. Nothing holds a
reference to its parent, so no structure is self-referential and no
operation walks an ancestry chain.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from korum_sync.schemas.comment import Comment, CommentNode


@dataclass(frozen=True)
class CommentForest:
    """Immutable arena + index representation of a comment tree.

    Attributes:
        arena: Comment snapshots keyed by id
        order: Comment ids in input (creation) order
        children: Child ids per parent id, in input order
        roots: Root ids in input order
        promoted: Ids shown as roots although they name a parent (orphans
            whose parent is outside the fetch window, and cycle breakers)
    """

    arena: Mapping[str, Comment] = field(default_factory=dict)
    order: tuple[str, ...] = ()
    children: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    roots: tuple[str, ...] = ()
    promoted: frozenset[str] = frozenset()

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, comment_id: object) -> bool:
        return comment_id in self.arena

    def get(self, comment_id: str) -> Comment | None:
        return self.arena.get(comment_id)

    def replies(self, comment_id: str) -> tuple[Comment, ...]:
        return tuple(self.arena[child] for child in self.children.get(comment_id, ()))

    def root_comments(self) -> tuple[Comment, ...]:
        return tuple(self.arena[root] for root in self.roots)

    def walk(self) -> Iterator[tuple[int, Comment]]:
        """Depth-first pre-order traversal yielding ``(depth, comment)``."""
        stack = [(0, root) for root in reversed(self.roots)]
        while stack:
            depth, comment_id = stack.pop()
            yield depth, self.arena[comment_id]
            for child in reversed(self.children.get(comment_id, ())):
                stack.append((depth + 1, child))

    def flatten(self) -> list[Comment]:
        return [comment for _, comment in self.walk()]

    def comments(self) -> list[Comment]:
        """Comments in their original input order."""
        return [self.arena[comment_id] for comment_id in self.order]

    def to_nodes(self) -> tuple[CommentNode, ...]:
        """Nested presentation with ``replies`` on every node."""
        built: dict[str, CommentNode] = {}
        # Reverse pre-order visits every child before its parent.
        for _, comment in reversed(list(self.walk())):
            built[comment.id] = CommentNode(
                comment=comment,
                replies=tuple(built[child] for child in self.children.get(comment.id, ())),
            )
        return tuple(built[root] for root in self.roots)

    def replace(self, comment_id: str, updater: Callable[[Comment], Comment]) -> CommentForest:
        """Return a forest with one comment snapshot replaced; shape unchanged."""
        current = self.arena.get(comment_id)
        if current is None:
            return self
        updated = updater(current)
        if updated is current:
            return self
        if updated.parent_id != current.parent_id:
            return build_comment_tree(updated if c.id == comment_id else c for c in self.comments())
        arena = dict(self.arena)
        arena[comment_id] = updated
        return CommentForest(
            arena=MappingProxyType(arena),
            order=self.order,
            children=self.children,
            roots=self.roots,
            promoted=self.promoted,
        )

    def without(self, comment_id: str) -> CommentForest:
        """Excise one comment; its replies are promoted to roots for display."""
        if comment_id not in self.arena:
            return self
        return build_comment_tree(c for c in self.comments() if c.id != comment_id)

    def with_comment(self, comment: Comment) -> CommentForest:
        """Insert ``comment`` (or replace the one with the same id)."""
        if comment.id in self.arena:
            return self.replace(comment.id, lambda _: comment)
        return build_comment_tree([*self.comments(), comment])


def build_comment_tree(comments: Iterable[Comment]) -> CommentForest:
    """Build a forest from a flat sequence of comments for one post.

    Runs in O(n): one pass fills the arena, a second attaches each comment to
    its parent's child list when the parent is present and to the root list
    otherwise. Sibling order follows input order. Parent references forming
    a cycle leave those comments unreachable from any root; the first such
    comment in input order is then promoted to a root, which breaks the cycle.
    """
    arena: dict[str, Comment] = {}
    order: list[str] = []
    for comment in comments:
        if comment.id not in arena:
            order.append(comment.id)
        # A re-delivered comment keeps its first position but its latest snapshot.
        arena[comment.id] = comment

    position = {comment_id: index for index, comment_id in enumerate(order)}
    children: dict[str, list[str]] = {}
    roots: list[str] = []
    promoted: set[str] = set()

    for comment_id in order:
        parent_id = arena[comment_id].parent_id
        if parent_id is not None and parent_id in arena and parent_id != comment_id:
            children.setdefault(parent_id, []).append(comment_id)
        else:
            roots.append(comment_id)
            if parent_id is not None:
                promoted.add(comment_id)

    reachable: set[str] = set()

    def mark(start: str) -> None:
        stack = [start]
        while stack:
            current = stack.pop()
            if current in reachable:
                continue
            reachable.add(current)
            stack.extend(children.get(current, ()))

    for root in roots:
        mark(root)

    if len(reachable) < len(order):
        for comment_id in order:
            if comment_id in reachable:
                continue
            parent_id = arena[comment_id].parent_id
            siblings = children.get(parent_id, []) if parent_id is not None else []
            if comment_id in siblings:
                siblings.remove(comment_id)
            roots.append(comment_id)
            promoted.add(comment_id)
            mark(comment_id)
        roots.sort(key=position.__getitem__)

    return CommentForest(
        arena=MappingProxyType(arena),
        order=tuple(order),
        children=MappingProxyType({k: tuple(v) for k, v in children.items() if v}),
        roots=tuple(roots),
        promoted=frozenset(promoted),
    )
