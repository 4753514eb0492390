"""Convenience exports for ORM models."""
from .chat import Chat, ChatParticipant, Message
from .group import Group, GroupMember
from .notification import Notification
from .post import Comment, Like, Post
from .profile import Follower, Profile

__all__ = [
    "Chat",
    "ChatParticipant",
    "Comment",
    "Follower",
    "Group",
    "GroupMember",
    "Like",
    "Message",
    "Notification",
    "Post",
    "Profile",
]
