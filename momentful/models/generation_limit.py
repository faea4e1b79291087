from sqlalchemy import CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from momentful.models.base import Base, TimestampMixin, UUIDMixin


class GenerationLimit(Base, UUIDMixin, TimestampMixin):
    """Per-user remaining generation counters."""

    __tablename__ = "user_generation_limits"
    __table_args__ = (
        CheckConstraint(
            "images_remaining >= 0 AND images_remaining <= images_limit",
            name="ck_generation_limits_images_range",
        ),
        CheckConstraint(
            "videos_remaining >= 0 AND videos_remaining <= videos_limit",
            name="ck_generation_limits_videos_range",
        ),
    )

    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)

    images_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    videos_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    images_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    videos_limit: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<GenerationLimit {self.user_id} "
            f"images={self.images_remaining}/{self.images_limit} "
            f"videos={self.videos_remaining}/{self.videos_limit}>"
        )
