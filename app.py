"""FastHTML app for masked-region image editing via a Modal Gemini worker."""

import base64
import io
import json
import logging
import os
import time

from fasthtml.common import *
from starlette.responses import Response

from backend import ModalBackend
from editing import MAX_COUNT, InputError
from editor import GENERATING, EditorSession
from gallery import RESOLUTIONS, HistoryStore
from selection import DEFAULT_THICKNESS, FREEHAND, MAX_THICKNESS, MIN_THICKNESS, POLYGON, RECTANGLE

logging.basicConfig(level=logging.DEBUG, format="%(levelname)s:%(name)s:%(message)s")
logger = logging.getLogger("region_editor")

app, rt = fast_app(pico=False, hdrs=[
    Link(rel="stylesheet", href="https://cdn.jsdelivr.net/npm/daisyui@4.12.24/dist/full.min.css"),
    Script(src="https://cdn.tailwindcss.com"),
])

# One history store for the running app, shared by the editor views
history = HistoryStore()
editor = EditorSession(ModalBackend(), history=history)

OUTPAINT_RATIOS = [
    ("Square (1:1)", "1:1"),
    ("Landscape (4:3)", "4:3"),
    ("Portrait (3:4)", "3:4"),
    ("Wide (16:9)", "16:9"),
    ("Story (9:16)", "9:16"),
]


def png_url(img) -> str:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode()}"


def bytes_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode()}"


def overlay_state() -> dict:
    overlay = editor.canvas.render()
    return {
        "paths": len(editor.canvas.paths),
        "overlay": png_url(overlay) if overlay is not None else None,
    }


def find_image(image_id: str):
    return editor.gallery.find(image_id) or history.get(image_id)


@rt("/")
def home():
    has_image = editor.image is not None

    return Title("Region Editor"), Html(
        Head(
            Link(rel="stylesheet", href="https://cdn.jsdelivr.net/npm/daisyui@4.12.24/dist/full.min.css"),
            Script(src="https://cdn.tailwindcss.com"),
        ),
        Body(
            Div(
                # Header
                Div(
                    H1("Edit Selected Region", cls="text-2xl font-bold"),
                    Div(
                        Form(
                            Input(type="file", name="image", accept="image/*", cls="file-input file-input-bordered file-input-sm"),
                            Button("Upload", type="submit", cls="btn btn-primary btn-sm"),
                            action="/upload", method="post", enctype="multipart/form-data",
                            cls="flex gap-2 items-center"
                        ),
                        A("History", href="/history", cls="btn btn-sm btn-ghost"),
                        cls="flex gap-2 items-center"
                    ),
                    cls="flex justify-between items-center mb-4"
                ),

                Div(
                    Div(
                        workspace() if has_image else Div(
                            P("Upload an image to begin", cls="text-gray-500 text-lg"),
                            cls="border-2 border-dashed border-gray-300 rounded-lg p-32 text-center"
                        ),
                        controls() if has_image else None,
                        cls="w-full lg:w-1/2"
                    ),
                    Div(gallery_panel(), cls="w-full lg:w-1/2"),
                    cls="flex flex-col lg:flex-row gap-6"
                ),

                cls="p-4 max-w-7xl mx-auto", data_theme="light"
            )
        )
    )


def workspace():
    image = editor.image
    state = overlay_state()

    return Div(
        # Toolbar
        Div(
            Div(
                Label("Tool:", cls="text-sm font-medium mr-1"),
                Select(
                    Option("Brush", value=FREEHAND, selected=editor.canvas.tool == FREEHAND),
                    Option("Lasso", value=POLYGON, selected=editor.canvas.tool == POLYGON),
                    Option("Rectangle", value=RECTANGLE, selected=editor.canvas.tool == RECTANGLE),
                    id="tool-select", cls="select select-sm select-bordered"
                ),
                cls="flex items-center"
            ),
            Div(
                Label("Size:", cls="text-sm font-medium mr-1"),
                Input(type="range", id="thickness", min=str(MIN_THICKNESS), max=str(MAX_THICKNESS),
                      value=str(int(editor.canvas.thickness or DEFAULT_THICKNESS)), cls="range range-xs w-32"),
                Span(f"{int(editor.canvas.thickness)}px", id="thickness-label", cls="text-xs text-gray-500 ml-1"),
                id="thickness-group", cls="flex items-center"
            ),
            Button("Clear Selection", id="clear-btn", cls="btn btn-sm btn-outline btn-error"),
            Button("Remove Image", id="remove-btn", cls="btn btn-sm btn-ghost"),
            Span(f"{image.width} x {image.height}", cls="text-xs text-gray-500 ml-auto"),
            cls="flex flex-wrap gap-2 items-center p-2 bg-gray-100 rounded mb-3"
        ),

        # Source image, committed selection overlay and live stroke preview
        Div(
            Div(
                Img(src=bytes_url(editor.source.data, editor.source.mime_type), id="input-img", cls="block w-full rounded shadow"),
                Img(src=state["overlay"], id="overlay-img", cls="absolute top-0 left-0 w-full h-full pointer-events-none"),
                Canvas(id="canvas", cls="absolute top-0 left-0 cursor-crosshair touch-none"),
                cls="relative"
            ),
            P("Drag to select the area to edit. Only the selected area may change.", cls="text-xs text-gray-500 mt-1"),
            cls="mb-4"
        ),

        Script(f"window.EDITOR = {json.dumps({'paths': state['paths']})};"),
        Script(WORKSPACE_JS),
        id="workspace"
    )


def controls():
    return Div(
        Form(
            Label("Reference image (optional)", cls="text-xs font-bold text-gray-600"),
            Div(
                Input(type="file", name="image", accept="image/*", cls="file-input file-input-bordered file-input-sm"),
                Button("Set", type="submit", cls="btn btn-sm"),
                Span("reference set", cls="badge badge-success badge-sm") if editor.reference else None,
                cls="flex gap-2 items-center"
            ),
            action="/reference", method="post", enctype="multipart/form-data",
            cls="flex flex-col gap-1 mb-3"
        ),
        Textarea(id="prompt", placeholder="Describe the change inside the selection...",
                 cls="textarea textarea-bordered w-full h-20 mb-2"),
        Div(
            Label("Images:", cls="text-sm font-medium mr-1"),
            Select(*[Option(str(n), value=str(n)) for n in range(1, MAX_COUNT + 1)],
                   id="count-select", cls="select select-sm select-bordered"),
            Button("Generate", id="generate-btn", cls="btn btn-sm btn-primary"),
            Span(editor.error or "", id="status", cls="text-sm text-error ml-2"),
            cls="flex flex-wrap gap-2 items-center mb-4"
        ),
        Details(
            Summary("Expand view (outpainting)", cls="cursor-pointer text-sm font-medium text-gray-600"),
            Div(
                Select(*[Option(label, value=value) for label, value in OUTPAINT_RATIOS],
                       id="ratio-select", cls="select select-sm select-bordered"),
                Input(type="text", id="expand-prompt", placeholder="Optional prompt...",
                      cls="input input-sm input-bordered w-48"),
                Button("Expand", id="expand-btn", cls="btn btn-sm"),
                cls="flex flex-wrap gap-2 items-center mt-2"
            ),
        ),
        Script(CONTROLS_JS),
        cls="mb-4"
    )


def image_card(img, compact: bool = False):
    status = editor.upscaling.get(img.id)
    return Div(
        A(Img(src=f"/images/{img.id}", cls="w-full object-cover" + (" h-40" if compact else "")),
          href=f"/images/{img.id}", target="_blank"),
        Span(img.resolution, cls="badge badge-sm absolute top-2 left-2") if img.resolution else None,
        Div(
            Span(img.timestamp.strftime("%H:%M %d/%m"), cls="text-xs text-gray-500"),
            Span(status, cls="text-xs") if status else Div(
                *[Button(f"Up {res}", cls="btn btn-xs upscale-btn", data_id=img.id, data_res=res,
                         disabled=img.resolution == res)
                  for res in RESOLUTIONS if img.resolution != "4K"],
                A("Download", href=f"/download/{img.id}", cls="btn btn-xs btn-ghost"),
                cls="flex gap-1"
            ),
            cls="flex justify-between items-center p-2"
        ),
        title=img.prompt,
        cls="relative border rounded overflow-hidden shadow-sm"
    )


def gallery_panel():
    gallery = editor.gallery
    pending = editor.status == GENERATING
    if not pending and not gallery.latest and not gallery.history:
        return Div(P("Results will appear here", cls="text-gray-400"),
                   cls="border rounded-lg p-16 text-center")
    return Div(
        H2("Latest results", cls="text-lg font-semibold mb-2"),
        P(f"Generating... ({editor.generation_time:.0f}s)", cls="text-sm text-gray-500") if pending else None,
        P(f"Done in {editor.generation_time:.0f}s", cls="text-xs text-gray-400 mb-2") if gallery.latest and not pending else None,
        Div(*[image_card(img) for img in gallery.latest], cls="grid grid-cols-2 gap-4 mb-6"),
        H2("Earlier results", cls="text-lg font-semibold mb-2") if gallery.history else None,
        Div(*[image_card(img, compact=True) for img in gallery.history], cls="grid grid-cols-3 gap-3"),
        Script(GALLERY_JS),
    )


WORKSPACE_JS = """
(function() {
    const canvas = document.getElementById('canvas');
    const inputImg = document.getElementById('input-img');
    const overlayImg = document.getElementById('overlay-img');
    const toolSelect = document.getElementById('tool-select');
    const thickness = document.getElementById('thickness');
    const thicknessLabel = document.getElementById('thickness-label');
    const thicknessGroup = document.getElementById('thickness-group');

    if (!canvas || !inputImg) return;

    let drawing = false;
    let events = [];
    let current = [];

    // Backing store at native resolution, CSS size follows the rendered image
    function sync() {
        canvas.width = inputImg.naturalWidth;
        canvas.height = inputImg.naturalHeight;
        canvas.style.width = inputImg.clientWidth + 'px';
        canvas.style.height = inputImg.clientHeight + 'px';
        drawPreview();
    }

    let resizeTimer = null;
    function reportResize() {
        clearTimeout(resizeTimer);
        resizeTimer = setTimeout(async function() {
            const res = await fetch('/resize', {
                method: 'POST',
                headers: {'Content-Type': 'application/json'},
                body: JSON.stringify({width: inputImg.clientWidth, height: inputImg.clientHeight})
            });
            if (res.ok) showOverlay(await res.json());
        }, 200);
    }

    inputImg.onload = function() { sync(); reportResize(); };
    if (inputImg.complete) { sync(); reportResize(); }
    new ResizeObserver(function() { sync(); reportResize(); }).observe(inputImg);

    function box() {
        const r = canvas.getBoundingClientRect();
        return [r.left, r.top, r.width, r.height];
    }

    function toNative(e, b) {
        return {
            x: (e.clientX - b[0]) * (canvas.width / b[2]),
            y: (e.clientY - b[1]) * (canvas.height / b[3])
        };
    }

    function record(type, e) {
        const b = box();
        events.push({type: type, x: e.clientX, y: e.clientY, box: b});
        current.push(toNative(e, b));
    }

    function drawPreview() {
        const ctx = canvas.getContext('2d');
        ctx.clearRect(0, 0, canvas.width, canvas.height);
        if (current.length < 1) return;
        const tool = toolSelect.value;
        const scale = canvas.width / Math.max(1, canvas.clientWidth);
        ctx.lineJoin = 'round';
        ctx.lineCap = 'round';
        ctx.beginPath();
        if (tool === 'rectangle') {
            const a = current[0], b = current[current.length - 1];
            ctx.fillStyle = 'rgba(193, 95, 60, 0.3)';
            ctx.strokeStyle = 'rgba(193, 95, 60, 0.9)';
            ctx.lineWidth = 2 * scale;
            ctx.fillRect(a.x, a.y, b.x - a.x, b.y - a.y);
            ctx.strokeRect(a.x, a.y, b.x - a.x, b.y - a.y);
            return;
        }
        ctx.moveTo(current[0].x, current[0].y);
        for (let i = 1; i < current.length; i++) ctx.lineTo(current[i].x, current[i].y);
        if (tool === 'freehand') {
            ctx.strokeStyle = 'rgba(193, 95, 60, 0.7)';
            ctx.lineWidth = parseFloat(thickness.value);
        } else {
            ctx.strokeStyle = 'rgba(193, 95, 60, 0.9)';
            ctx.lineWidth = 2 * scale;
        }
        ctx.stroke();
    }

    function showOverlay(data) {
        if (data && data.overlay) overlayImg.src = data.overlay;
    }

    async function commit() {
        const payload = {tool: toolSelect.value, thickness: parseFloat(thickness.value), events: events};
        events = [];
        const res = await fetch('/stroke', {
            method: 'POST',
            headers: {'Content-Type': 'application/json'},
            body: JSON.stringify(payload)
        });
        current = [];
        drawPreview();
        if (res.ok) showOverlay(await res.json());
    }

    canvas.addEventListener('mousedown', function(e) {
        drawing = true;
        events = [];
        current = [];
        record('down', e);
        drawPreview();
    });

    canvas.addEventListener('mousemove', function(e) {
        if (!drawing) return;
        record('move', e);
        drawPreview();
    });

    function finish(type) {
        return function(e) {
            if (!drawing) return;
            drawing = false;
            events.push({type: type});
            commit();
        };
    }
    canvas.addEventListener('mouseup', finish('up'));
    canvas.addEventListener('mouseleave', finish('leave'));

    function toolChanged() {
        thicknessGroup.style.display = toolSelect.value === 'freehand' ? 'flex' : 'none';
    }
    toolSelect.addEventListener('change', toolChanged);
    toolChanged();
    thickness.addEventListener('input', function() {
        thicknessLabel.textContent = thickness.value + 'px';
    });

    document.getElementById('clear-btn').onclick = async function() {
        const res = await fetch('/selection/clear', { method: 'POST' });
        if (res.ok) {
            const data = await res.json();
            overlayImg.src = data.overlay || '';
        }
    };

    document.getElementById('remove-btn').onclick = async function() {
        await fetch('/source/clear', { method: 'POST' });
        window.location.reload();
    };
})();
"""

CONTROLS_JS = """
(function() {
    const status = document.getElementById('status');

    async function run(btn, url, body, busyText) {
        btn.disabled = true;
        const label = btn.textContent;
        btn.textContent = 'Processing...';
        status.className = 'text-sm text-gray-500 ml-2';
        status.textContent = busyText;
        try {
            const res = await fetch(url, {
                method: 'POST',
                headers: {'Content-Type': 'application/json'},
                body: JSON.stringify(body)
            });
            const data = await res.json();
            if (data.status === 'error') {
                status.className = 'text-sm text-error ml-2';
                status.textContent = data.error;
            } else {
                window.location.reload();
            }
        } catch (err) {
            status.className = 'text-sm text-error ml-2';
            status.textContent = 'Error: ' + err.message;
        }
        btn.disabled = false;
        btn.textContent = label;
    }

    document.getElementById('generate-btn').onclick = function() {
        const count = parseInt(document.getElementById('count-select').value);
        run(this, '/generate', {
            prompt: document.getElementById('prompt').value,
            count: count
        }, 'Generating ' + count + ' image(s)...');
    };

    document.getElementById('expand-btn').onclick = function() {
        const count = parseInt(document.getElementById('count-select').value);
        run(this, '/expand', {
            ratio: document.getElementById('ratio-select').value,
            prompt: document.getElementById('expand-prompt').value,
            count: count
        }, 'Expanding...');
    };
})();
"""

GALLERY_JS = """
(function() {
    document.querySelectorAll('.upscale-btn').forEach(function(btn) {
        btn.onclick = async function() {
            btn.disabled = true;
            btn.textContent = 'Upscaling...';
            await fetch('/upscale/' + btn.dataset.id + '/' + btn.dataset.res, { method: 'POST' });
            window.location.reload();
        };
    });
})();
"""


@rt("/upload", methods=["POST"])
async def upload(request):
    form = await request.form()
    file = form.get("image")
    if not file or not getattr(file, "filename", None):
        return RedirectResponse("/", status_code=302)

    data = await file.read()
    try:
        editor.load_source(data)
    except (OSError, ValueError) as e:
        logger.warning("Rejected upload %s: %s", file.filename, e)
        return Response("Not a readable image", status_code=400)

    return RedirectResponse("/", status_code=302)


@rt("/reference", methods=["POST"])
async def reference(request):
    form = await request.form()
    file = form.get("image")
    data = await file.read() if file and getattr(file, "filename", None) else None
    try:
        editor.load_reference(data)
    except (OSError, ValueError) as e:
        logger.warning("Rejected reference image: %s", e)
        return Response("Not a readable image", status_code=400)
    return RedirectResponse("/", status_code=302)


@rt("/source/clear", methods=["POST"])
def clear_source():
    editor.clear_source()
    return {"status": "cleared"}


@rt("/stroke", methods=["POST"])
async def stroke(request):
    if editor.image is None:
        return Response("No image uploaded", status_code=400)

    body = await request.json()
    try:
        editor.canvas.set_tool(body.get("tool", FREEHAND), body.get("thickness"))
        committed = editor.canvas.replay(body.get("events", []))
    except (KeyError, TypeError, ValueError) as e:
        return Response(f"Bad stroke: {e}", status_code=400)

    logger.info("Stroke: %d committed, %d path(s) total", committed, len(editor.canvas.paths))
    return overlay_state()


@rt("/resize", methods=["POST"])
async def resize(request):
    if editor.image is None:
        return Response("No image uploaded", status_code=400)
    body = await request.json()
    editor.canvas.resize(float(body["width"]), float(body["height"]))
    return overlay_state()


@rt("/selection/clear", methods=["POST"])
def clear_selection():
    editor.canvas.clear()
    return overlay_state()


def result_state(images) -> dict:
    return {
        "status": editor.status,
        "error": editor.error,
        "generation_time": round(editor.generation_time, 1),
        "images": [{"id": img.id, "prompt": img.prompt} for img in images],
    }


def _count(body) -> int:
    try:
        return max(1, min(MAX_COUNT, int(body.get("count", 1))))
    except (TypeError, ValueError):
        return 1


@rt("/generate", methods=["POST"])
async def generate(request):
    body = await request.json()
    count = _count(body)
    logger.info("Generate: %d image(s), %d path(s)", count, len(editor.canvas.paths))
    started = time.monotonic()
    images = await editor.generate(body.get("prompt", ""), count)
    logger.info("Generate finished in %.1fs with %d image(s)", time.monotonic() - started, len(images))
    return result_state(images)


@rt("/expand", methods=["POST"])
async def expand(request):
    body = await request.json()
    images = await editor.expand(body.get("ratio", "16:9"), body.get("prompt", ""), _count(body))
    return result_state(images)


@rt("/upscale/{image_id}/{resolution}", methods=["POST"])
async def upscale(image_id: str, resolution: str):
    try:
        img = await editor.upscale(image_id, resolution.upper())
    except KeyError:
        return Response("Unknown image", status_code=404)
    except InputError as e:
        return Response(str(e), status_code=400)
    if img is None:
        return {"status": "error", "error": "Upscaling failed"}
    return {"status": "success", "id": img.id, "resolution": img.resolution}


@rt("/images/{image_id}")
def image(image_id: str):
    img = find_image(image_id)
    if img is None:
        return Response("Unknown image", status_code=404)
    return Response(img.data, media_type=img.mime_type)


@rt("/download/{image_id}")
def download(image_id: str):
    img = find_image(image_id)
    if img is None:
        return Response("Unknown image", status_code=404)
    ext = img.mime_type.split("/")[-1].replace("jpeg", "jpg")
    filename = f"render-result-{img.id}-{int(time.time() * 1000)}.{ext}"
    return Response(img.data, media_type=img.mime_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@rt("/history")
def history_page(category: str = "ALL"):
    items = history.by_category(category)
    return Title("History"), Html(
        Head(
            Link(rel="stylesheet", href="https://cdn.jsdelivr.net/npm/daisyui@4.12.24/dist/full.min.css"),
            Script(src="https://cdn.tailwindcss.com"),
        ),
        Body(
            Div(
                Div(
                    H1("History", cls="text-2xl font-bold"),
                    Div(
                        *[A(c, href=f"/history?category={c}",
                            cls="btn btn-sm" + (" btn-primary" if c == category else " btn-ghost"))
                          for c in ["ALL"] + history.categories()],
                        Button("Clear", id="clear-history", cls="btn btn-sm btn-outline btn-error"),
                        A("Back", href="/", cls="btn btn-sm"),
                        cls="flex gap-2"
                    ),
                    cls="flex justify-between items-center mb-4"
                ),
                Div(
                    *[Div(
                        A(Img(src=f"/images/{item.id}", cls="w-full h-40 object-cover"), href=f"/images/{item.id}", target="_blank"),
                        Div(
                            Span(item.category, cls="badge badge-sm"),
                            Span(item.resolution, cls="badge badge-sm") if item.resolution else None,
                            Span(item.timestamp.strftime("%H:%M %d/%m"), cls="text-xs text-gray-500"),
                            A("Download", href=f"/download/{item.id}", cls="btn btn-xs btn-ghost"),
                            cls="flex gap-1 items-center p-2"
                        ),
                        P(item.prompt, cls="text-xs text-gray-600 px-2 pb-2 truncate"),
                        cls="border rounded overflow-hidden"
                    ) for item in items],
                    cls="grid grid-cols-4 gap-4"
                ) if items else P("No images yet", cls="text-gray-500"),
                Script("""
document.getElementById('clear-history').onclick = async function() {
    await fetch('/history/clear', { method: 'POST' });
    window.location.href = '/history';
};
"""),
                cls="p-4 max-w-7xl mx-auto", data_theme="light"
            )
        )
    )


@rt("/history/clear", methods=["POST"])
def clear_history():
    history.clear()
    return {"status": "cleared"}


if __name__ == "__main__":
    serve(port=int(os.environ.get("PORT", 8000)))
