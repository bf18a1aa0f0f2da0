"""Screen controllers driving the data-mutating views."""

from optisync.screens.community import CommunityFeed, ImageAttachment
from optisync.screens.drawing import Canvas, DrawingBoard, Stroke

__all__ = ["Canvas", "CommunityFeed", "DrawingBoard", "ImageAttachment", "Stroke"]
