import pytest
from PIL import Image

from selection import FREEHAND, POLYGON, RECTANGLE, Box, SelectionCanvas, to_native


def loaded_canvas(size=(400, 300)):
    canvas = SelectionCanvas()
    canvas.load_image(Image.new("RGB", size))
    return canvas


def test_to_native_identity():
    assert to_native(120, 80, Box(0, 0, 400, 300), (400, 300)) == (120, 80)


def test_to_native_downscaled_display():
    # Displayed at half size: each CSS pixel is two native pixels
    assert to_native(50, 40, Box(0, 0, 200, 150), (400, 300)) == (100, 80)


def test_to_native_non_uniform_scale_and_offset():
    x, y = to_native(110, 70, Box(10, 20, 100, 200), (400, 300))
    assert x == pytest.approx(400.0)
    assert y == pytest.approx(75.0)


def test_to_native_keeps_subpixel_coordinates():
    x, y = to_native(1, 1, Box(0, 0, 3, 3), (10, 10))
    assert x == pytest.approx(10 / 3)
    assert y == pytest.approx(10 / 3)


def test_to_native_rejects_hidden_canvas():
    with pytest.raises(ValueError):
        to_native(1, 1, Box(0, 0, 0, 100), (10, 10))


def test_pointer_events_ignored_without_image():
    canvas = SelectionCanvas()
    box = Box(0, 0, 100, 100)
    assert canvas.pointer_down(10, 10, box) is False
    assert canvas.pointer_move(20, 20, box) is False
    assert canvas.pointer_up() is None
    assert canvas.paths == []
    assert canvas.render() is None


def test_single_point_is_discarded():
    canvas = loaded_canvas()
    canvas.pointer_down(10, 10, Box(0, 0, 400, 300))
    assert canvas.pointer_up() is None
    assert canvas.paths == []
    assert canvas.current is None


def test_move_without_down_does_nothing():
    canvas = loaded_canvas()
    assert canvas.pointer_move(10, 10, Box(0, 0, 400, 300)) is False
    assert canvas.current is None


def test_commit_uses_active_tool_and_thickness():
    canvas = loaded_canvas()
    canvas.set_tool(FREEHAND, 42)
    box = Box(0, 0, 200, 150)
    canvas.pointer_down(10, 10, box)
    canvas.pointer_move(20, 15, box)
    path = canvas.pointer_up()

    assert path.kind == FREEHAND
    assert path.thickness == 42
    assert path.points == ((20, 20), (40, 30))
    assert canvas.paths == [path]


def test_set_tool_clamps_thickness_and_rejects_unknown():
    canvas = loaded_canvas()
    canvas.set_tool(FREEHAND, 1000)
    assert canvas.thickness == 200
    canvas.set_tool(FREEHAND, 1)
    assert canvas.thickness == 5
    with pytest.raises(ValueError):
        canvas.set_tool("eraser")


def test_replay_commits_each_stroke():
    canvas = loaded_canvas()
    canvas.set_tool(RECTANGLE)
    box = [0, 0, 400, 300]
    events = [
        {"type": "down", "x": 10, "y": 10, "box": box},
        {"type": "move", "x": 50, "y": 40, "box": box},
        {"type": "up"},
        {"type": "down", "x": 5, "y": 5, "box": box},
        {"type": "leave"},
    ]
    assert canvas.replay(events) == 1
    assert canvas.paths[0].points == ((10, 10), (50, 40))


def test_replay_maps_each_event_with_its_own_box():
    canvas = loaded_canvas()
    canvas.set_tool(POLYGON)
    events = [
        {"type": "down", "x": 10, "y": 10, "box": [0, 0, 400, 300]},
        # Display shrank to half size mid-stroke
        {"type": "move", "x": 10, "y": 10, "box": {"left": 0, "top": 0, "width": 200, "height": 150}},
        {"type": "up"},
    ]
    canvas.replay(events)
    assert canvas.paths[0].points == ((10, 10), (20, 20))


@pytest.mark.parametrize("bad_move", [
    {"type": "move", "x": 20, "y": 20, "box": [0, 0, 0, 0]},
    {"type": "move", "x": 20, "y": 20},
])
def test_failed_replay_discards_partial_path(bad_move):
    canvas = loaded_canvas()
    canvas.set_tool(FREEHAND)
    events = [{"type": "down", "x": 1, "y": 1, "box": [0, 0, 400, 300]}, bad_move, {"type": "up"}]

    with pytest.raises((KeyError, ValueError)):
        canvas.replay(events)

    assert canvas.current is None
    assert canvas.paths == []
    assert canvas.render().getbbox() is None


def test_resize_keeps_paths_and_native_overlay_size():
    canvas = loaded_canvas()
    box = Box(0, 0, 400, 300)
    canvas.pointer_down(10, 10, box)
    canvas.pointer_move(60, 60, box)
    canvas.pointer_up()
    before = list(canvas.paths)

    overlay = canvas.resize(100, 75)

    assert canvas.paths == before
    assert overlay.size == (400, 300)
    assert canvas.display_size == (100, 75)


def test_render_is_pure_function_of_state():
    canvas = loaded_canvas()
    canvas.set_tool(POLYGON)
    box = Box(0, 0, 400, 300)
    for x, y in [(10, 10), (100, 10), (100, 100)]:
        if canvas.current is None:
            canvas.pointer_down(x, y, box)
        else:
            canvas.pointer_move(x, y, box)
    canvas.pointer_up()

    first = canvas.render()
    second = canvas.render()
    assert first.mode == "RGBA"
    assert first.tobytes() == second.tobytes()
    # Inside the lasso is tinted, far corner stays transparent
    assert first.getpixel((80, 30))[3] > 0
    assert first.getpixel((390, 290))[3] == 0


def test_render_includes_in_progress_path():
    canvas = loaded_canvas()
    canvas.set_tool(FREEHAND, 20)
    box = Box(0, 0, 400, 300)
    canvas.pointer_down(50, 50, box)
    canvas.pointer_move(150, 50, box)

    overlay = canvas.render()
    assert overlay.getpixel((100, 50))[3] > 0
    assert canvas.paths == []


def test_clear_and_load_image_reset_selection():
    canvas = loaded_canvas()
    box = Box(0, 0, 400, 300)
    canvas.pointer_down(1, 1, box)
    canvas.pointer_move(9, 9, box)
    canvas.pointer_up()
    canvas.clear()
    assert canvas.paths == []

    canvas.pointer_down(1, 1, box)
    canvas.pointer_move(9, 9, box)
    canvas.pointer_up()
    canvas.load_image(Image.new("RGB", (50, 50)))
    assert canvas.paths == []
    assert canvas.backing_size == (50, 50)
