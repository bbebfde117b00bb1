"""Modal deployment of the Gemini image worker used for edits and upscaling."""

import os
from pathlib import Path

import modal

APP_NAME = os.environ.get("MODAL_APP_NAME", "region-editor")
MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash-image")

# Models that accept an explicit output size
SIZED_MODELS = {"gemini-3-pro-image-preview"}

app = modal.App(APP_NAME)

worker_image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "google-genai",
        "pillow",
    )
    .env({"GEMINI_MODEL": MODEL})
)

# Gemini API key (GEMINI_API_KEY), must exist in the Modal workspace
GEMINI_SECRET_NAME = "gemini-secret"
secrets = [modal.Secret.from_name(GEMINI_SECRET_NAME)]

UPSCALE_PROMPT = (
    "Upscale this image to {size} resolution. "
    "Enhance details, sharpness and clarity while preserving the original "
    "content, style and composition. Make it photorealistic."
)


def extract_image(response) -> bytes:
    """Return the first inline image in a generate_content response."""
    for candidate in response.candidates or []:
        if candidate.content is None:
            continue
        for part in candidate.content.parts or []:
            if part.inline_data is not None and part.inline_data.data:
                return part.inline_data.data
    raise RuntimeError("Gemini response contained no image")


@app.cls(image=worker_image, secrets=secrets, timeout=300, retries=0, max_containers=8)
class ImageWorker:
    @modal.enter()
    def connect(self):
        from google import genai

        self.model = os.environ.get("GEMINI_MODEL", MODEL)
        self.client = genai.Client(api_key=os.environ["GEMINI_API_KEY"])
        print(f"Gemini client ready, model: {self.model}")

    @modal.method()
    def generate(self, images: list[tuple[bytes, str]], prompt: str) -> bytes:
        """Generate one image from input images and an instruction.

        Args:
            images: List of (bytes, mime_type), in the order the prompt names them
            prompt: Full instruction text

        Returns:
            Raw bytes of the generated image
        """
        from google.genai import types

        print(f"Generating: {len(images)} image(s), prompt {len(prompt)} chars")
        contents = [types.Part.from_bytes(data=data, mime_type=mime) for data, mime in images]
        contents.append(prompt)

        response = self.client.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        out = extract_image(response)
        print(f"Generated {len(out)} bytes")
        return out

    @modal.method()
    def upscale(self, image: tuple[bytes, str], target: str, aspect_ratio: str | None = None) -> bytes:
        """Upscale one image to a "2k" or "4k" target."""
        from google.genai import types

        size = target.upper()
        data, mime = image
        config = types.GenerateContentConfig(response_modalities=["IMAGE"])
        if self.model in SIZED_MODELS:
            config.image_config = types.ImageConfig(image_size=size, aspect_ratio=aspect_ratio)

        print(f"Upscaling {len(data)} bytes to {size} (aspect {aspect_ratio})")
        response = self.client.models.generate_content(
            model=self.model,
            contents=[
                types.Part.from_bytes(data=data, mime_type=mime),
                UPSCALE_PROMPT.format(size=size),
            ],
            config=config,
        )
        return extract_image(response)


@app.local_entrypoint()
def main(image_path: str, prompt: str = "Make the walls white"):
    """Test: modal run modal_app.py --image-path path/to/image.png"""
    data = Path(image_path).read_bytes()
    worker = ImageWorker()

    out = worker.generate.remote([(data, "image/png")], prompt)
    out_path = Path(image_path).with_name("generated.png")
    out_path.write_bytes(out)
    print(f"Wrote {out_path} ({len(out)} bytes)")
