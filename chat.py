"""Two-party conversations, optionally scoped to a project.

A conversation is identified by its unordered participant pair plus project.
``participants_key`` stores that identity in canonical form so the database
rejects a duplicate created between our lookup and our insert.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, distinct, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accounts import get_active_user
from config import settings
from database import Page, paginate
from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from models import Conversation, Message, MessageType, Project, User, utcnow

logger = logging.getLogger(__name__)


def conversation_key(user_a_id: str, user_b_id: str, project_id: Optional[str] = None) -> str:
    first, second = sorted((user_a_id, user_b_id))
    return f"{first}:{second}:{project_id or '-'}"


def other_participant(conversation: Conversation, user: User) -> Optional[User]:
    if user.id == conversation.participant_one_id:
        return conversation.participant_two
    if user.id == conversation.participant_two_id:
        return conversation.participant_one
    return None


def find_conversation(db: Session, user_a_id: str, user_b_id: str, project_id: Optional[str] = None) -> Optional[Conversation]:
    query = db.query(Conversation).filter(
        or_(
            and_(Conversation.participant_one_id == user_a_id, Conversation.participant_two_id == user_b_id),
            and_(Conversation.participant_one_id == user_b_id, Conversation.participant_two_id == user_a_id),
        ),
        Conversation.deleted_at.is_(None)
    )
    if project_id is None:
        query = query.filter(Conversation.project_id.is_(None))
    else:
        query = query.filter(Conversation.project_id == project_id)
    return query.first()


def get_conversation_for(db: Session, conversation_id: str, actor: User) -> Conversation:
    conversation = db.query(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.deleted_at.is_(None)
    ).first()
    if not conversation:
        raise NotFound("Conversation not found")
    if not conversation.has_participant(actor):
        raise PermissionDenied("Unauthorized")
    return conversation


def _add_message(db: Session, conversation: Conversation, sender: User, recipient: User,
                 content: str, message_type, attachments, now: datetime) -> Message:
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender.id,
        recipient_id=recipient.id,
        project_id=conversation.project_id,
        content=content,
        message_type=MessageType(message_type),
        attachments=list(attachments or []),
        is_system_message=MessageType(message_type) == MessageType.SYSTEM,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    db.flush()
    conversation.last_message_id = message.id
    conversation.last_message_at = message.created_at
    return message


def find_or_create_conversation(db: Session, actor: User, participant_id: str, project_id: Optional[str],
                                initial_message: str, now: Optional[datetime] = None) -> Conversation:
    """Start a conversation with ``participant_id`` and send the first message.

    An existing conversation for the same pair and project is never reused
    silently: Conflict is raised carrying it.
    """
    now = now or utcnow()
    participant = get_active_user(db, participant_id)
    if participant.id == actor.id:
        raise ValidationFailed({"participant_id": ["You cannot start a conversation with yourself."]})

    project = None
    if project_id:
        project = db.query(Project).filter(
            Project.id == project_id,
            Project.deleted_at.is_(None)
        ).first()
        if not project:
            raise NotFound("Project not found")
        if not (project.has_party(actor) and project.has_party(participant)):
            raise PermissionDenied("Both participants must belong to the project")

    existing = find_conversation(db, actor.id, participant.id, project_id)
    if existing:
        raise Conflict("Conversation already exists", existing=existing, key="conversation")

    conversation = Conversation(
        participant_one_id=actor.id,
        participant_two_id=participant.id,
        project_id=project_id,
        participants_key=conversation_key(actor.id, participant.id, project_id),
        title=project.title if project else None,
        is_active=True,
    )
    try:
        db.add(conversation)
        db.flush()
        _add_message(db, conversation, actor, participant, initial_message, MessageType.TEXT, [], now)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(
            "Conversation already exists",
            existing=find_conversation(db, actor.id, participant.id, project_id),
            key="conversation"
        )
    db.refresh(conversation)
    logger.info("Conversation %s started between %s and %s", conversation.id, actor.id, participant.id)
    return conversation


def send_message(db: Session, conversation: Conversation, sender: User, content: str,
                 message_type="text", attachments: Optional[List[str]] = None,
                 now: Optional[datetime] = None) -> Message:
    """Insert a message and move the conversation's last-message pointer in one commit."""
    now = now or utcnow()
    recipient = other_participant(conversation, sender)
    if recipient is None:
        raise PermissionDenied("Unauthorized")
    try:
        message = _add_message(db, conversation, sender, recipient, content, message_type, attachments, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.info("Message %s sent in conversation %s", message.id, conversation.id)
    return message


def mark_all_read(db: Session, conversation: Conversation, user: User, now: Optional[datetime] = None) -> int:
    if not conversation.has_participant(user):
        raise PermissionDenied("Unauthorized")
    marked = db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.recipient_id == user.id,
        Message.read_at.is_(None),
        Message.deleted_at.is_(None)
    ).update({"read_at": now or utcnow()}, synchronize_session=False)
    db.commit()
    return marked


def unread_count(db: Session, conversation: Conversation, user: User) -> int:
    return db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.recipient_id == user.id,
        Message.read_at.is_(None),
        Message.deleted_at.is_(None)
    ).count()


def last_message(db: Session, conversation: Conversation) -> Optional[Message]:
    if not conversation.last_message_id:
        return None
    return db.get(Message, conversation.last_message_id)


def list_conversations(db: Session, user: User, page: int = 1) -> Page:
    query = db.query(Conversation).filter(
        or_(Conversation.participant_one_id == user.id, Conversation.participant_two_id == user.id),
        Conversation.is_active == True,
        Conversation.deleted_at.is_(None)
    ).order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
    return paginate(query, page)


def get_conversation_messages(db: Session, conversation: Conversation, user: User,
                              page: int = 1, now: Optional[datetime] = None) -> Page:
    """One page of messages, newest page first, each page oldest-first.

    Opening the conversation marks it read for ``user``.
    """
    mark_all_read(db, conversation, user, now)
    query = db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.deleted_at.is_(None)
    ).order_by(Message.created_at.desc(), Message.id.desc())
    result = paginate(query, page, settings.MESSAGES_PER_PAGE)
    result.items = list(reversed(result.items))
    return result


def delete_conversation(db: Session, conversation: Conversation, actor: User, now: Optional[datetime] = None) -> Conversation:
    """Soft-delete ``conversation`` for both participants.

    The identity key gets the row id appended, which frees the pair (and
    project) for a new conversation while keeping the column unique.
    """
    if not conversation.has_participant(actor):
        raise PermissionDenied("Unauthorized")
    conversation.deleted_at = now or utcnow()
    conversation.is_active = False
    conversation.participants_key = f"{conversation.participants_key}#{conversation.id}"
    db.commit()
    db.refresh(conversation)
    logger.info("Conversation %s deleted by %s", conversation.id, actor.id)
    return conversation


def project_conversation(db: Session, project: Project) -> Conversation:
    """The client/freelancer conversation for ``project``, created empty on first use."""
    existing = find_conversation(db, project.client_id, project.freelancer_id, project.id)
    if existing:
        return existing
    conversation = Conversation(
        participant_one_id=project.client_id,
        participant_two_id=project.freelancer_id,
        project_id=project.id,
        participants_key=conversation_key(project.client_id, project.freelancer_id, project.id),
        title=project.title,
        is_active=True,
    )
    try:
        db.add(conversation)
        db.commit()
    except IntegrityError:
        db.rollback()
        return find_conversation(db, project.client_id, project.freelancer_id, project.id)
    db.refresh(conversation)
    return conversation


def send_project_message(db: Session, project: Project, sender: User, content: str,
                         message_type="text", attachments: Optional[List[str]] = None,
                         now: Optional[datetime] = None) -> Message:
    if not project.has_party(sender):
        raise PermissionDenied("Unauthorized")
    conversation = project_conversation(db, project)
    return send_message(db, conversation, sender, content, message_type, attachments, now)


def list_project_messages(db: Session, project: Project, user: User,
                          page: int = 1, now: Optional[datetime] = None) -> Page:
    if not project.has_party(user):
        raise PermissionDenied("Unauthorized")
    conversation = find_conversation(db, project.client_id, project.freelancer_id, project.id)
    if conversation:
        mark_all_read(db, conversation, user, now)
    query = db.query(Message).join(Conversation, Conversation.id == Message.conversation_id).filter(
        Message.project_id == project.id,
        Message.deleted_at.is_(None),
        Conversation.deleted_at.is_(None)
    ).order_by(Message.created_at.desc(), Message.id.desc())
    result = paginate(query, page, settings.MESSAGES_PER_PAGE)
    result.items = list(reversed(result.items))
    return result


def unread_summary(db: Session, user: User) -> dict:
    total, conversations = db.query(
        func.count(Message.id),
        func.count(distinct(Message.conversation_id))
    ).select_from(Message).join(
        Conversation, Conversation.id == Message.conversation_id
    ).filter(
        Message.recipient_id == user.id,
        Message.read_at.is_(None),
        Message.deleted_at.is_(None),
        Conversation.is_active == True,
        Conversation.deleted_at.is_(None)
    ).one()
    return {"total_unread": total, "conversations_with_unread": conversations}
