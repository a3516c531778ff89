import pytest

import catalog
import schemas
from errors import Conflict, InvalidState, NotFound, ValidationFailed

from factories import make_category


def test_slugify():
    assert catalog.slugify("Web & Mobile Dev") == "web-mobile-dev"
    assert catalog.slugify("  Data_Science  ") == "data-science"
    assert catalog.slugify("Café Über Design") == "cafe-uber-design"


def test_full_path_walks_to_root(db):
    dev = make_category(db, "Development")
    web = make_category(db, "Web", parent=dev)
    backend = make_category(db, "Backend", parent=web)

    assert catalog.full_path(db, backend) == "Development > Web > Backend"
    assert catalog.full_path(db, dev) == "Development"
    assert [c.id for c in catalog.ancestors(db, backend)] == [web.id, dev.id]


def test_category_tree_nests_active_children(db):
    dev = make_category(db, "Development", sort_order=1)
    design = make_category(db, "Design", sort_order=2)
    make_category(db, "Web", parent=dev)
    make_category(db, "Hidden", parent=dev, is_active=False)

    tree = catalog.category_tree(db)
    assert [node.name for node in tree] == ["Development", "Design"]
    assert [child.name for child in tree[0].children] == ["Web"]
    assert tree[1].children == []
    assert design.id == tree[1].id


def test_inactive_category_is_not_found(db):
    hidden = make_category(db, "Hidden", is_active=False)
    with pytest.raises(NotFound):
        catalog.get_category(db, hidden.id)
    assert catalog.get_category(db, hidden.id, active_only=False).id == hidden.id


def test_duplicate_slug_is_conflict(db):
    make_category(db, "Writing")
    with pytest.raises(Conflict):
        make_category(db, "writing")


def test_parent_must_exist(db):
    with pytest.raises(ValidationFailed) as exc:
        catalog.create_category(db, schemas.CategoryCreate(name="Orphan", parent_id="missing"))
    assert "parent_id" in exc.value.errors


def test_reparenting_cannot_create_cycle(db):
    root = make_category(db, "Root")
    child = make_category(db, "Child", parent=root)
    grandchild = make_category(db, "Grandchild", parent=child)

    with pytest.raises(ValidationFailed):
        catalog.update_category(db, root, schemas.CategoryUpdate(parent_id=grandchild.id))
    with pytest.raises(ValidationFailed):
        catalog.update_category(db, root, schemas.CategoryUpdate(parent_id=root.id))

    moved = catalog.update_category(db, grandchild, schemas.CategoryUpdate(parent_id=root.id))
    assert catalog.full_path(db, moved) == "Root > Grandchild"


def test_depth_is_bounded(db):
    parent = make_category(db, "Level 0")
    for level in range(1, catalog.MAX_CATEGORY_DEPTH):
        parent = make_category(db, f"Level {level}", parent=parent)
    with pytest.raises(ValidationFailed):
        make_category(db, "Too deep", parent=parent)


def test_corrupt_parent_chain_is_detected(db):
    a = make_category(db, "A")
    b = make_category(db, "B", parent=a)
    a.parent_id = b.id
    db.commit()
    with pytest.raises(InvalidState):
        catalog.full_path(db, b)
