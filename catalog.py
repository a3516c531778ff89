"""Category tree stored as a flat table with parent ids.

Ancestor walks are iterative and bounded by MAX_CATEGORY_DEPTH, so a corrupt
parent chain can never loop forever.
"""
import logging
from typing import List, Optional

from slugify import slugify
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import Conflict, InvalidState, NotFound, ValidationFailed
from models import Category
import schemas

logger = logging.getLogger(__name__)

MAX_CATEGORY_DEPTH = 10


def get_category(db: Session, category_id: str, active_only: bool = True) -> Category:
    query = db.query(Category).filter(Category.id == category_id)
    if active_only:
        query = query.filter(Category.is_active == True)
    category = query.first()
    if not category:
        raise NotFound("Category not found")
    return category


def ancestors(db: Session, category: Category) -> List[Category]:
    """Parents of ``category``, nearest first."""
    chain = []
    seen = {category.id}
    parent_id = category.parent_id
    while parent_id:
        if parent_id in seen or len(chain) >= MAX_CATEGORY_DEPTH:
            raise InvalidState("Category hierarchy is cyclic or too deep")
        parent = db.get(Category, parent_id)
        if parent is None:
            break
        chain.append(parent)
        seen.add(parent.id)
        parent_id = parent.parent_id
    return chain


def full_path(db: Session, category: Category) -> str:
    names = [c.name for c in reversed(ancestors(db, category))]
    names.append(category.name)
    return " > ".join(names)


def children_of(db: Session, category_id: Optional[str], active_only: bool = True) -> List[Category]:
    query = db.query(Category)
    if category_id is None:
        query = query.filter(Category.parent_id.is_(None))
    else:
        query = query.filter(Category.parent_id == category_id)
    if active_only:
        query = query.filter(Category.is_active == True)
    return query.order_by(Category.sort_order, Category.name).all()


def category_tree(db: Session, root_id: Optional[str] = None, depth: int = 0) -> List[schemas.CategoryTree]:
    nodes = []
    for category in children_of(db, root_id):
        node = schemas.CategoryTree.model_validate(category)
        if depth + 1 < MAX_CATEGORY_DEPTH:
            node.children = category_tree(db, category.id, depth + 1)
        nodes.append(node)
    return nodes


def _check_parent(db: Session, category: Category, parent_id: Optional[str]):
    if parent_id is None:
        return
    parent = db.get(Category, parent_id)
    if parent is None:
        raise ValidationFailed({"parent_id": ["The selected parent id is invalid."]})
    if category.id is not None and parent.id == category.id:
        raise ValidationFailed({"parent_id": ["A category cannot be its own parent."]})
    chain = ancestors(db, parent)
    if category.id is not None and any(c.id == category.id for c in chain):
        raise ValidationFailed({"parent_id": ["A category cannot be moved under its own descendant."]})
    if len(chain) + 1 >= MAX_CATEGORY_DEPTH:
        raise ValidationFailed({"parent_id": ["Category hierarchy is too deep."]})


def create_category(db: Session, data: schemas.CategoryCreate) -> Category:
    category = Category(
        name=data.name,
        slug=slugify(data.slug or data.name),
        description=data.description,
        icon=data.icon,
        sort_order=data.sort_order,
        is_active=data.is_active,
    )
    if not category.slug:
        raise ValidationFailed({"slug": ["The slug must contain letters or digits."]})
    _check_parent(db, category, data.parent_id)
    category.parent_id = data.parent_id
    db.add(category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("The slug has already been taken.")
    db.refresh(category)
    logger.info("Created category %s", category.slug)
    return category


def update_category(db: Session, category: Category, data: schemas.CategoryUpdate) -> Category:
    changes = data.model_dump(exclude_unset=True)
    if "parent_id" in changes:
        _check_parent(db, category, changes["parent_id"])
    if "slug" in changes and changes["slug"] is not None:
        changes["slug"] = slugify(changes["slug"])
        if not changes["slug"]:
            raise ValidationFailed({"slug": ["The slug must contain letters or digits."]})
    for field, value in changes.items():
        if value is None and field not in ("parent_id", "description", "icon"):
            continue
        setattr(category, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("The slug has already been taken.")
    db.refresh(category)
    return category
