"""Post lookup for campaigns"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from mailcast.core.errors import InvalidInput, NotFound
from mailcast.models.post import Post

FALLBACK_TITLE = "New post"


@dataclass(frozen=True)
class PostContent:
    """Immutable snapshot of a post, fetched once per run"""
    id: int
    title: Optional[str]
    email_subject: Optional[str]
    html: Optional[str]
    plaintext: Optional[str]
    status: str

    @property
    def subject(self) -> str:
        return self.email_subject or self.title or FALLBACK_TITLE

    @property
    def html_body(self) -> str:
        return self.html or f"<h1>{self.title or FALLBACK_TITLE}</h1>"

    @property
    def text_body(self) -> str:
        return self.plaintext or self.title or FALLBACK_TITLE


def get_published_post(post_id: int, db: Session) -> PostContent:
    """Load a post as a value object, requiring it to be published

    Raises:
        NotFound: Post does not exist
        InvalidInput: Post is not published yet
    """
    post = db.query(Post).filter(Post.id == post_id).first()
    if not post:
        raise NotFound("Post not found.")

    if post.status != "published":
        raise InvalidInput("Campaigns can only be sent after the post is published.")

    return PostContent(
        id=post.id,
        title=post.title,
        email_subject=post.email_subject,
        html=post.html,
        plaintext=post.plaintext,
        status=post.status
    )
