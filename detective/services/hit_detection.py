"""
Click hit detection for case images rendered with object-fit: contain

The image is scaled to fit inside its container while keeping its aspect
ratio, so one axis is padded (letterbox top/bottom or pillarbox left/right).
Clicks are mapped back to normalized image coordinates before being tested
against the answer regions.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Protocol, Tuple

logger = logging.getLogger(__name__)


class Region(Protocol):
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class ClickPoint:
    """Click position in viewport pixels"""
    x: float
    y: float


@dataclass(frozen=True)
class ImageSize:
    """Natural (intrinsic) pixel size of the image"""
    width: float
    height: float


@dataclass(frozen=True)
class ContainerBox:
    """Bounding rect of the element the image is rendered into"""
    left: float
    top: float
    width: float
    height: float


@dataclass(frozen=True)
class DisplayBox:
    """Area actually covered by image content inside the container"""
    width: float
    height: float
    offset_x: float
    offset_y: float


class ImageNotMeasuredError(ValueError):
    """Raised when the image or its container has no measurable size yet"""


def compute_display_box(image_size: ImageSize, container: ContainerBox) -> DisplayBox:
    """
    Reproduce the object-fit: contain layout
    
    Raises:
        ImageNotMeasuredError: if any dimension is zero or negative
    """
    if image_size.width <= 0 or image_size.height <= 0:
        raise ImageNotMeasuredError("Image natural size is not available")
    if container.width <= 0 or container.height <= 0:
        raise ImageNotMeasuredError("Image container has no size")
    
    image_aspect = image_size.width / image_size.height
    container_aspect = container.width / container.height
    
    if image_aspect > container_aspect:
        # Wider than the container: fit width, pad top and bottom
        displayed_width = container.width
        displayed_height = container.width / image_aspect
        return DisplayBox(
            width=displayed_width,
            height=displayed_height,
            offset_x=0.0,
            offset_y=(container.height - displayed_height) / 2,
        )
    
    # Taller (or equal): fit height, pad left and right
    displayed_height = container.height
    displayed_width = container.height * image_aspect
    return DisplayBox(
        width=displayed_width,
        height=displayed_height,
        offset_x=(container.width - displayed_width) / 2,
        offset_y=0.0,
    )


def normalize_click(
    click: ClickPoint,
    image_size: ImageSize,
    container: ContainerBox
) -> Tuple[float, float]:
    """
    Map a viewport click to normalized image coordinates (u, v)
    
    Clicks in the padding land outside [0, 1] on the padded axis; no clamping.
    """
    box = compute_display_box(image_size, container)
    u = (click.x - container.left - box.offset_x) / box.width
    v = (click.y - container.top - box.offset_y) / box.height
    return u, v


def region_contains(region: Region, u: float, v: float) -> bool:
    """Inclusive containment of a normalized point"""
    return (
        region.x <= u <= region.x + region.width
        and region.y <= v <= region.y + region.height
    )


def is_click_in_region(
    click: ClickPoint,
    region: Region,
    image_size: ImageSize,
    container: ContainerBox
) -> bool:
    u, v = normalize_click(click, image_size, container)
    return region_contains(region, u, v)


def check_answer(
    click: ClickPoint,
    regions: Iterable[Region],
    image_size: ImageSize,
    container: ContainerBox
) -> bool:
    """
    Check whether a click hits any of the answer regions
    
    Args:
        click: Click position in viewport pixels
        regions: Normalized answer rectangles
        image_size: Natural size of the image
        container: Bounding rect of the image element
        
    Returns:
        True if at least one region contains the click
        
    Raises:
        ImageNotMeasuredError: if the image has not been measured yet
    """
    u, v = normalize_click(click, image_size, container)
    hit = any(region_contains(region, u, v) for region in regions)
    logger.debug(f"Hit test: normalized=({u:.4f}, {v:.4f}) hit={hit}")
    return hit
