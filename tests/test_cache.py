from korum_sync.services.cache import CacheKey, EntityCache


def test_keys_with_different_filters_are_distinct():
    assert CacheKey.posts("question") != CacheKey.posts("notice")
    assert CacheKey.posts("question", None) != CacheKey.posts("question", "k1")
    assert CacheKey.search("  Parsing ") == CacheKey.search("parsing")
    assert str(CacheKey.comments("p1")) == "comments('p1')"
    assert str(CacheKey.korums()) == "korums"


def test_patch_leaves_absent_keys_absent():
    cache = EntityCache()
    result = cache.patch(CacheKey.post("missing"), lambda value: value + 1)

    assert result is None
    assert CacheKey.post("missing") not in cache


def test_invalidate_hides_entry_until_refreshed():
    cache = EntityCache()
    key = CacheKey.korums()
    cache.set(key, ("k1",))
    seen = []
    cache.add_invalidation_listener(seen.append)

    assert cache.invalidate(key) is True
    assert cache.get(key) is None
    assert cache.get(key, allow_stale=True) == ("k1",)
    assert seen == [key]

    cache.set(key, ("k1", "k2"))
    assert cache.get(key) == ("k1", "k2")


def test_patch_keeps_staleness():
    cache = EntityCache()
    key = CacheKey.notifications()
    cache.set(key, (1,))
    cache.invalidate(key)
    cache.patch(key, lambda value: (*value, 2))

    entry = cache.entry(key)
    assert entry.value == (1, 2)
    assert entry.stale is True


def test_invalidate_prefix_and_listener_removal():
    cache = EntityCache()
    cache.set(CacheKey.posts(), ())
    cache.set(CacheKey.posts("notice"), ())
    cache.set(CacheKey.korums(), ())
    seen = []
    remove = cache.add_invalidation_listener(seen.append)
    remove()

    keys = cache.invalidate_prefix("posts")

    assert set(keys) == {CacheKey.posts(), CacheKey.posts("notice")}
    assert seen == []
    assert cache.get(CacheKey.korums()) == ()


def test_version_markers_only_move_forward():
    cache = EntityCache()
    cache.mark_authoritative("p1", 4)
    cache.mark_authoritative("p1", 2)

    assert cache.authoritative_version("p1") == 4
    assert cache.is_stale_version("p1", 4) is True
    assert cache.is_stale_version("p1", 5) is False
    assert cache.is_stale_version("p1", None) is False
    assert cache.is_stale_version("p2", 1) is False


def test_deferred_patch_runs_on_last_release():
    cache = EntityCache()
    applied = []
    cache.hold("p1")
    cache.hold("p1")
    cache.defer("p1", 3, lambda: applied.append(3))
    cache.defer("p1", 2, lambda: applied.append(2))

    cache.release("p1")
    assert applied == []
    assert cache.is_held("p1")

    cache.release("p1")
    assert applied == [3]
    assert not cache.is_held("p1")


def test_deferred_patch_dropped_when_superseded():
    cache = EntityCache()
    applied = []
    cache.hold("p1")
    cache.defer("p1", 3, lambda: applied.append(3))
    cache.mark_authoritative("p1", 5)
    cache.release("p1")

    assert applied == []
