import numpy as np
import pytest

from face_biometrics.app.errors import FrameConversionError
from face_biometrics.pipeline.frames import BGRA8888, YUV420, CameraFrame, FrameColorConverter, FramePlane, rotate_image


def _yuv_frame(w, h, y, u, v, row_pad=0, chroma_stride=1):
    y_row = w + row_pad
    y_plane = np.full((h, y_row), y, dtype=np.uint8)
    cw, ch = w // 2, h // 2
    c_row = cw * chroma_stride + row_pad
    u_plane = np.zeros((ch, c_row), dtype=np.uint8)
    v_plane = np.zeros((ch, c_row), dtype=np.uint8)
    u_plane[:, : cw * chroma_stride: chroma_stride] = u
    v_plane[:, : cw * chroma_stride: chroma_stride] = v
    return CameraFrame(
        YUV420,
        w,
        h,
        [
            FramePlane(y_plane.tobytes(), y_row, 1),
            FramePlane(u_plane.tobytes(), c_row, chroma_stride),
            FramePlane(v_plane.tobytes(), c_row, chroma_stride),
        ],
    )


def test_yuv_neutral_chroma_is_gray():
    rgb = FrameColorConverter().to_rgb(_yuv_frame(8, 4, 128, 128, 128))
    assert rgb.shape == (4, 8, 3)
    assert rgb.dtype == np.uint8
    assert np.all(rgb == 128)


def test_yuv_bt601_coefficients():
    rgb = FrameColorConverter().to_rgb(_yuv_frame(4, 4, 100, 128, 200))
    # R = 100 + 1.370705 * 72, G = 100 - 0.698001 * 72, B = 100
    assert tuple(rgb[0, 0]) == (199, 50, 100)


def test_yuv_clamps_to_byte_range():
    rgb = FrameColorConverter().to_rgb(_yuv_frame(4, 2, 250, 255, 255))
    assert rgb[0, 0, 0] == 255
    assert rgb[0, 0, 2] == 255


def test_yuv_row_padding_and_interleaved_chroma():
    plain = FrameColorConverter().to_rgb(_yuv_frame(6, 4, 90, 60, 180))
    padded = FrameColorConverter().to_rgb(_yuv_frame(6, 4, 90, 60, 180, row_pad=10, chroma_stride=2))
    assert np.array_equal(plain, padded)


def test_yuv_short_buffer_raises():
    frame = _yuv_frame(8, 4, 128, 128, 128)
    frame.planes[0] = FramePlane(b"\x00" * 10, 8, 1)
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_rgb(frame)


def test_yuv_missing_planes_raises():
    frame = _yuv_frame(8, 4, 128, 128, 128)
    frame.planes = frame.planes[:1]
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_rgb(frame)


def test_bgra_swaps_channels_and_skips_row_padding():
    w, h, row = 3, 2, 3 * 4 + 8
    buf = np.zeros((h, row), dtype=np.uint8)
    px = buf[:, : w * 4].reshape(h, w, 4)
    px[...] = (10, 20, 30, 255)
    buf[:, w * 4:] = 99
    rgb = FrameColorConverter().to_rgb(CameraFrame(BGRA8888, w, h, [FramePlane(buf.tobytes(), row, 4)]))
    assert rgb.shape == (2, 3, 3)
    assert np.all(rgb[..., 0] == 30)
    assert np.all(rgb[..., 1] == 20)
    assert np.all(rgb[..., 2] == 10)


def test_from_bgr_round_trips_through_rgb():
    bgr = np.zeros((4, 6, 3), dtype=np.uint8)
    bgr[..., 0] = 200
    rgb = FrameColorConverter().to_rgb(CameraFrame.from_bgr(bgr))
    assert np.all(rgb[..., 2] == 200)
    assert np.all(rgb[..., :2] == 0)


def test_unsupported_format_raises():
    frame = CameraFrame("rgb565", 4, 4, [FramePlane(b"\x00" * 32, 8, 2)])
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_rgb(frame)


def test_invalid_size_raises():
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_rgb(CameraFrame(BGRA8888, 0, 4, []))


@pytest.mark.parametrize("w,h", [(0, 4), (4, 0), (-2, 4)])
def test_empty_yuv_frame_raises_for_both_outputs(w, h):
    frame = _yuv_frame(4, 4, 10, 128, 128)
    frame.width, frame.height = w, h
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_nv21(frame)
    with pytest.raises(FrameConversionError):
        FrameColorConverter().to_rgb(frame)


def test_nv21_from_yuv_layout():
    data, w, h = FrameColorConverter().to_nv21(_yuv_frame(4, 4, 50, 70, 90))
    assert (w, h) == (4, 4)
    assert len(data) == 4 * 4 * 3 // 2
    assert set(data[:16]) == {50}
    # V first, then U
    assert list(data[16:20]) == [90, 70, 90, 70]


def test_nv21_from_gray_bgra_has_neutral_chroma():
    bgr = np.full((4, 4, 3), 128, dtype=np.uint8)
    data, w, h = FrameColorConverter().to_nv21(CameraFrame.from_bgr(bgr))
    assert len(data) == 24
    assert set(data) == {128}


def test_upright_rotation_and_mirror():
    bgr = np.zeros((2, 4, 3), dtype=np.uint8)
    bgr[0, 0] = 255
    frame = CameraFrame.from_bgr(bgr)
    conv = FrameColorConverter()
    rotated = conv.to_upright_bgr(frame, sensor_orientation=90)
    assert rotated.shape == (4, 2, 3)
    # Top-left moves to top-right on a clockwise turn
    assert rotated[0, 1, 0] == 255
    mirrored = conv.to_upright_bgr(frame, mirror=True)
    assert mirrored[0, 3, 0] == 255


def test_rotate_image_rejects_odd_angles():
    with pytest.raises(ValueError):
        rotate_image(np.zeros((2, 2, 3), dtype=np.uint8), 45)
