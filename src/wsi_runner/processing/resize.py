"""Image resizing helpers built on OpenCV."""

import cv2
import numpy as np


def resize_image(image: np.ndarray, size, nearest: bool = False) -> np.ndarray:
    """
    Resize ``image`` to exactly ``size=(width, height)``.

    Label images must use ``nearest=True`` so no new label values appear.
    Shrinking uses area interpolation, enlarging bilinear.
    """
    w, h = int(size[0]), int(size[1])
    if image.shape[1] == w and image.shape[0] == h:
        return image
    if nearest:
        interpolation = cv2.INTER_NEAREST
    elif w < image.shape[1] and h < image.shape[0]:
        interpolation = cv2.INTER_AREA
    else:
        interpolation = cv2.INTER_LINEAR
    src = image
    if src.dtype == np.bool_:
        src = src.astype(np.uint8)
    elif src.dtype == np.int64:
        src = src.astype(np.int32)
    out = cv2.resize(src, (w, h), interpolation=interpolation)
    # cv2 drops a trailing singleton channel
    if image.ndim == 3 and out.ndim == 2:
        out = out[..., None]
    return out.astype(image.dtype, copy=False)
