"""Built-in tool definitions. Provider USD costs are per call unless a unit is given."""

from typing import Any

from app.services.tool_registry import ToolDefinition, ToolParameter, ToolPricing, ToolSchema

FAL_API_COSTS = {
    "flux_pro_kontext": 0.05,
    "flux_2": 0.025,
    "nano_banana_pro": 0.25,
    "upscale": 0.03,
    "face_swap": 0.02,
    "inpaint": 0.03,
    "extract_layer": 0.01,
    "veo3_per_second": 0.10,
    "ltx_per_second": 0.05,
    "wan_per_second": 0.08,
    "video_to_audio": 0.03,
    "tts": 0.02,
    "transcribe": 0.01,
    "lip_sync": 0.04,
    "music_per_minute": 0.02,
    "sfx": 0.03,
    "stem_separation": 0.03,
    "image_to_3d": 0.05,
    "describe": 0.01,
    "llm": 0.001,
}

IMAGE_SIZES = ["square_hd", "square", "landscape_4_3", "landscape_16_9", "portrait_4_3", "portrait_16_9"]
OUTPUT_FORMATS = ["jpeg", "png", "webp"]
ASPECT_RATIOS = ["16:9", "9:16", "1:1"]
TTS_LANGUAGES = ["en", "es", "fr", "de", "it", "pt", "pl", "tr", "ru", "nl", "cs", "ar", "zh", "ja", "ko", "hi"]


def _p(type_: str, description: str | None = None, **kwargs: Any) -> ToolParameter:
    return ToolParameter(type=type_, description=description, **kwargs)


def _schema(required: list[str], **properties: ToolParameter) -> ToolSchema:
    return ToolSchema(properties=properties, required=required)


def _flat(usd: float, credits: float) -> ToolPricing:
    return ToolPricing(base_usd_cost=usd, credits=credits)


def _per_unit(unit: str, usd: float, credits: float) -> ToolPricing:
    return ToolPricing(
        base_usd_cost=usd, per_unit_cost=usd, unit_type=unit, credits=credits, per_unit_credits=credits
    )


PROMPT = _p("string", "Text description of the desired output")
IMAGE_URL = _p("string", "URL of the input image")
SEED = _p("number", "Random seed for reproducible output")

_image_gen_props = dict(
    prompt=PROMPT,
    image_size=_p("string", "Output size preset", enum=IMAGE_SIZES, default="landscape_4_3"),
    num_images=_p("number", "Number of images to generate", default=1, minimum=1, maximum=4),
    seed=SEED,
    guidance_scale=_p("number", "Prompt adherence", default=3.5, minimum=1, maximum=20),
    output_format=_p("string", "Image file format", enum=OUTPUT_FORMATS, default="jpeg"),
)

_image_edit_props = dict(
    prompt=_p("string", "Editing instruction"),
    image_url=IMAGE_URL,
    seed=SEED,
    output_format=_p("string", "Image file format", enum=OUTPUT_FORMATS, default="jpeg"),
)

_video_props = dict(
    prompt=PROMPT,
    duration=_p("string", "Clip length", enum=["4s", "6s", "8s"], default="6s"),
    aspect_ratio=_p("string", "Frame aspect ratio", enum=ASPECT_RATIOS, default="16:9"),
    generate_audio=_p("boolean", "Generate a synchronized soundtrack", default=True),
)

_IMAGE_POLL = dict(poll_interval=2.0, poll_timeout=180.0)
_VIDEO_POLL = dict(poll_interval=3.0, poll_timeout=600.0)
_AUDIO_POLL = dict(poll_interval=2.0, poll_timeout=180.0)

BUILTIN_TOOLS: list[ToolDefinition] = [
    # image generation
    ToolDefinition(
        id="image.generate.flux-pro-kontext",
        name="FLUX Pro Kontext",
        description="High quality text-to-image generation with strong prompt adherence",
        category="image-generation",
        fal_model="fal-ai/flux-pro/kontext/text-to-image",
        execution_mode="sync",
        input_schema=_schema(["prompt"], **_image_gen_props),
        output_description="images: list of {url, width, height}",
        output_mime_types=["image/jpeg", "image/png", "image/webp"],
        pricing=_flat(FAL_API_COSTS["flux_pro_kontext"], 0.5),
        tags=["image", "text-to-image", "flux"],
    ),
    ToolDefinition(
        id="image.generate.flux-pro-kontext-edit",
        name="FLUX Pro Kontext Edit",
        description="Edit an existing image from a text instruction",
        category="image-editing",
        fal_model="fal-ai/flux-pro/kontext/max",
        execution_mode="sync",
        input_schema=_schema(["prompt", "image_url"], **_image_edit_props),
        output_description="images: list of {url, width, height}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["flux_pro_kontext"], 0.5),
        tags=["image", "edit", "flux"],
    ),
    ToolDefinition(
        id="image.generate.flux-pro-kontext-multi",
        name="FLUX Pro Kontext Multi",
        description="Compose a new image from several reference images",
        category="image-editing",
        fal_model="fal-ai/flux-pro/kontext/max/multi",
        execution_mode="sync",
        input_schema=_schema(
            ["prompt", "image_urls"],
            prompt=PROMPT,
            image_urls=_p("array", "Reference image URLs", items={"type": "string"}),
            seed=SEED,
        ),
        output_description="images: list of {url, width, height}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["flux_pro_kontext"] * 2, 1.0),
        tags=["image", "edit", "multi-reference", "flux"],
    ),
    ToolDefinition(
        id="image.generate.flux-2",
        name="FLUX 2",
        description="Fast, low cost text-to-image generation",
        category="image-generation",
        fal_model="fal-ai/flux-2",
        execution_mode="sync",
        input_schema=_schema(["prompt"], **_image_gen_props),
        output_description="images: list of {url, width, height}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["flux_2"], 0.65),
        tags=["image", "text-to-image", "fast", "flux"],
    ),
    ToolDefinition(
        id="image.generate.flux-2-edit",
        name="FLUX 2 Edit",
        description="Fast image editing from a text instruction",
        category="image-editing",
        fal_model="fal-ai/flux-2/edit",
        execution_mode="sync",
        input_schema=_schema(["prompt", "image_url"], **_image_edit_props),
        output_description="images: list of {url, width, height}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["flux_2"], 0.65),
        tags=["image", "edit", "fast", "flux"],
    ),
    ToolDefinition(
        id="image.generate.nano-banana-pro",
        name="Nano Banana Pro",
        description="Premium text-to-image generation with accurate text rendering",
        category="image-generation",
        fal_model="fal-ai/nano-banana-pro",
        execution_mode="sync",
        input_schema=_schema(
            ["prompt"],
            prompt=PROMPT,
            num_images=_p("number", "Number of images to generate", default=1, minimum=1, maximum=4),
            aspect_ratio=_p("string", "Frame aspect ratio", enum=ASPECT_RATIOS, default="1:1"),
            output_format=_p("string", "Image file format", enum=OUTPUT_FORMATS, default="png"),
        ),
        output_description="images: list of {url}",
        output_mime_types=["image/png", "image/jpeg"],
        pricing=_flat(FAL_API_COSTS["nano_banana_pro"], 0.7),
        tags=["image", "text-to-image", "premium"],
    ),
    ToolDefinition(
        id="image.generate.nano-banana-pro-edit",
        name="Nano Banana Pro Edit",
        description="Premium image editing from a text instruction",
        category="image-editing",
        fal_model="fal-ai/nano-banana-pro/edit",
        execution_mode="sync",
        input_schema=_schema(
            ["prompt", "image_urls"],
            prompt=_p("string", "Editing instruction"),
            image_urls=_p("array", "Images to edit", items={"type": "string"}),
            output_format=_p("string", "Image file format", enum=OUTPUT_FORMATS, default="png"),
        ),
        output_description="images: list of {url}",
        output_mime_types=["image/png", "image/jpeg"],
        pricing=_flat(FAL_API_COSTS["nano_banana_pro"], 0.7),
        tags=["image", "edit", "premium"],
    ),
    # image processing
    ToolDefinition(
        id="image.upscale",
        name="Creative Upscaler",
        description="Upscale an image 2x or 4x while adding detail",
        category="image-processing",
        fal_model="fal-ai/creative-upscaler",
        execution_mode="sync",
        input_schema=_schema(
            ["image_url"],
            image_url=IMAGE_URL,
            scale=_p("number", "Upscale factor", enum=[2, 4], default=2),
            creativity=_p("number", "How much new detail to invent", default=0.5, minimum=0, maximum=1),
            prompt=_p("string", "Optional guidance for added detail"),
        ),
        output_description="image: {url, width, height}",
        output_mime_types=["image/png"],
        pricing=_flat(FAL_API_COSTS["upscale"], 0.5),
        tags=["image", "upscale", "enhance"],
    ),
    ToolDefinition(
        id="image.face-swap",
        name="Face Swap",
        description="Swap the face from a source image onto a target image",
        category="image-editing",
        fal_model="fal-ai/face-swap",
        execution_mode="queue",
        input_schema=_schema(
            ["source_image_url", "target_image_url"],
            source_image_url=_p("string", "Image containing the face to use"),
            target_image_url=_p("string", "Image whose face is replaced"),
        ),
        output_description="image: {url}",
        output_mime_types=["image/png", "image/jpeg"],
        pricing=_flat(FAL_API_COSTS["face_swap"], 2.0),
        tags=["image", "face", "swap"],
        **_IMAGE_POLL,
    ),
    ToolDefinition(
        id="image.inpaint",
        name="FLUX Inpaint",
        description="Regenerate the masked region of an image from a prompt",
        category="image-editing",
        fal_model="fal-ai/flux-pro/v1.1/inpaint",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt", "image_url", "mask_url"],
            prompt=PROMPT,
            image_url=IMAGE_URL,
            mask_url=_p("string", "Mask image; white marks the area to regenerate"),
            seed=SEED,
        ),
        output_description="images: list of {url}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["inpaint"], 2.0),
        tags=["image", "inpaint", "edit"],
        **_IMAGE_POLL,
    ),
    ToolDefinition(
        id="image.outpaint",
        name="FLUX Outpaint",
        description="Extend an image beyond its borders",
        category="image-editing",
        fal_model="fal-ai/flux-pro/v1.1/outpaint",
        execution_mode="queue",
        input_schema=_schema(
            ["image_url"],
            image_url=IMAGE_URL,
            prompt=_p("string", "Description of the extended area"),
            image_size=_p("string", "Target size preset", enum=IMAGE_SIZES, default="landscape_16_9"),
        ),
        output_description="images: list of {url}",
        output_mime_types=["image/jpeg", "image/png"],
        pricing=_flat(FAL_API_COSTS["inpaint"], 2.0),
        tags=["image", "outpaint", "extend"],
        **_IMAGE_POLL,
    ),
    ToolDefinition(
        id="image.extract-layer",
        name="Background Removal",
        description="Extract the foreground subject onto a transparent background",
        category="image-processing",
        fal_model="fal-ai/birefnet",
        execution_mode="queue",
        input_schema=_schema(["image_url"], image_url=IMAGE_URL),
        output_description="image: {url}",
        output_mime_types=["image/png"],
        pricing=_flat(FAL_API_COSTS["extract_layer"], 0.5),
        tags=["image", "background-removal", "segmentation"],
        **_IMAGE_POLL,
    ),
    # video
    ToolDefinition(
        id="video.generate.veo3",
        name="Veo 3.1",
        description="Text-to-video with optional synchronized audio",
        category="video-generation",
        fal_model="fal-ai/veo3.1",
        execution_mode="queue",
        input_schema=_schema(["prompt"], **_video_props),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["veo3_per_second"], 2.2),
        tags=["video", "text-to-video", "veo"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.generate.veo3-image-to-video",
        name="Veo 3.1 Image to Video",
        description="Animate a still image into a video clip",
        category="video-generation",
        fal_model="fal-ai/veo3.1/fast/image-to-video",
        execution_mode="queue",
        input_schema=_schema(["prompt", "image_url"], image_url=IMAGE_URL, **_video_props),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["veo3_per_second"], 2.2),
        tags=["video", "image-to-video", "veo"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.generate.veo3-first-last-frame",
        name="Veo 3.1 First/Last Frame",
        description="Generate a clip that moves from a first frame to a last frame",
        category="video-generation",
        fal_model="fal-ai/veo3.1/fast/first-last-frame-to-video",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt", "first_frame_url", "last_frame_url"],
            first_frame_url=_p("string", "Opening frame image"),
            last_frame_url=_p("string", "Closing frame image"),
            **_video_props,
        ),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["veo3_per_second"], 2.2),
        tags=["video", "keyframes", "veo"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.generate.ltx-text",
        name="LTX Text to Video",
        description="Low cost text-to-video",
        category="video-generation",
        fal_model="fal-ai/ltx-2-19b/text-to-video",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt"],
            prompt=PROMPT,
            duration=_p("number", "Clip length in seconds", default=5, minimum=1, maximum=10),
        ),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["ltx_per_second"], 1.0),
        tags=["video", "text-to-video", "ltx", "budget"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.generate.ltx-image",
        name="LTX Image to Video",
        description="Low cost image-to-video",
        category="video-generation",
        fal_model="fal-ai/ltx-2-19b/image-to-video",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt", "image_url"],
            prompt=PROMPT,
            image_url=IMAGE_URL,
            duration=_p("number", "Clip length in seconds", default=5, minimum=1, maximum=10),
        ),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["ltx_per_second"], 1.0),
        tags=["video", "image-to-video", "ltx", "budget"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.animate.wan",
        name="Wan Animate",
        description="Drive a character image with motion from a reference video",
        category="video-editing",
        fal_model="fal-ai/wan/v2.2-14b/animate/move",
        execution_mode="queue",
        input_schema=_schema(
            ["image_url", "video_url"],
            image_url=_p("string", "Character image"),
            video_url=_p("string", "Motion reference video"),
            duration=_p("number", "Clip length in seconds", default=5, minimum=1, maximum=10),
        ),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_per_unit("second", FAL_API_COSTS["wan_per_second"], 2.0),
        tags=["video", "animate", "motion-transfer"],
        **_VIDEO_POLL,
    ),
    ToolDefinition(
        id="video.video-to-audio",
        name="Video to Audio",
        description="Generate a soundtrack that matches a video",
        category="audio-generation",
        fal_model="fal-ai/mmaudio-v2",
        execution_mode="queue",
        input_schema=_schema(
            ["video_url"],
            video_url=_p("string", "Video to score"),
            prompt=_p("string", "Optional description of the desired audio"),
        ),
        output_description="video: {url} with the generated audio track",
        output_mime_types=["video/mp4"],
        pricing=_flat(FAL_API_COSTS["video_to_audio"], 1.0),
        tags=["video", "audio", "foley"],
        **_VIDEO_POLL,
    ),
    # audio
    ToolDefinition(
        id="audio.tts",
        name="Voice Clone TTS",
        description="Speak text in the voice of a reference recording",
        category="audio-generation",
        fal_model="fal-ai/xtts-v2",
        execution_mode="queue",
        input_schema=_schema(
            ["text", "audio_url"],
            text=_p("string", "Text to speak"),
            audio_url=_p("string", "Reference voice recording"),
            language=_p("string", "Spoken language", enum=TTS_LANGUAGES, default="en"),
        ),
        output_description="audio_file: {url}",
        output_mime_types=["audio/wav"],
        pricing=_flat(FAL_API_COSTS["tts"], 1.0),
        tags=["audio", "tts", "voice-clone"],
        poll_interval=0.5,
        poll_timeout=60.0,
    ),
    ToolDefinition(
        id="audio.transcribe",
        name="Whisper Transcription",
        description="Transcribe speech in an audio file to text",
        category="audio-processing",
        fal_model="fal-ai/whisper",
        execution_mode="queue",
        input_schema=_schema(
            ["audio_url"],
            audio_url=_p("string", "Audio to transcribe"),
            task=_p("string", "Transcribe or translate to English", enum=["transcribe", "translate"]),
            language=_p("string", "Spoken language hint"),
        ),
        output_description="text and timestamped chunks",
        output_mime_types=["application/json"],
        pricing=_flat(FAL_API_COSTS["transcribe"], 1.0),
        tags=["audio", "speech-to-text", "whisper"],
        **_AUDIO_POLL,
    ),
    ToolDefinition(
        id="audio.lip-sync",
        name="Lip Sync",
        description="Animate a face image so it speaks the given audio",
        category="video-generation",
        fal_model="fal-ai/sadtalker",
        execution_mode="queue",
        input_schema=_schema(
            ["face_image_url", "audio_url"],
            face_image_url=_p("string", "Portrait to animate"),
            audio_url=_p("string", "Speech audio"),
        ),
        output_description="video: {url}",
        output_mime_types=["video/mp4"],
        pricing=_flat(FAL_API_COSTS["lip_sync"], 3.0),
        tags=["video", "lip-sync", "talking-head"],
        poll_interval=3.0,
        poll_timeout=300.0,
    ),
    ToolDefinition(
        id="music.generate",
        name="Music Generator",
        description="Compose instrumental music from a text description",
        category="music-generation",
        fal_model="CassetteAI/music-generator",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt"],
            prompt=_p("string", "Genre, mood and instrumentation"),
            duration=_p("number", "Length in seconds", default=30, minimum=15, maximum=180),
        ),
        output_description="audio_file: {url}",
        output_mime_types=["audio/wav"],
        pricing=_per_unit("minute", FAL_API_COSTS["music_per_minute"], 0.25),
        tags=["music", "audio", "composition"],
        **_AUDIO_POLL,
    ),
    ToolDefinition(
        id="audio.sfx",
        name="Sound Effects",
        description="Generate a sound effect from a text description",
        category="audio-generation",
        fal_model="fal-ai/audioldm2",
        execution_mode="queue",
        input_schema=_schema(
            ["prompt"],
            prompt=_p("string", "Description of the sound"),
            duration=_p("number", "Length in seconds", default=5, minimum=1, maximum=30),
        ),
        output_description="audio_file: {url}",
        output_mime_types=["audio/wav"],
        pricing=_flat(FAL_API_COSTS["sfx"], 1.0),
        tags=["audio", "sfx", "foley"],
        poll_interval=2.0,
        poll_timeout=120.0,
    ),
    ToolDefinition(
        id="audio.stem-separation",
        name="Stem Separation",
        description="Split a song into vocals, drums, bass and other stems",
        category="audio-processing",
        fal_model="fal-ai/demucs",
        execution_mode="queue",
        input_schema=_schema(
            ["audio_url"],
            audio_url=_p("string", "Song to separate"),
            stems=_p("number", "Number of stems", enum=[2, 4], default=4),
        ),
        output_description="one audio url per stem",
        output_mime_types=["audio/wav"],
        pricing=_flat(FAL_API_COSTS["stem_separation"], 2.0),
        tags=["audio", "stems", "remix"],
        **_AUDIO_POLL,
    ),
    # 3d, vision, text
    ToolDefinition(
        id="3d.image-to-3d",
        name="Hunyuan3D",
        description="Build a textured 3D model from a single image",
        category="3d-generation",
        fal_model="fal-ai/hunyuan3d-v3/image-to-3d",
        execution_mode="queue",
        input_schema=_schema(
            ["input_image_url"],
            input_image_url=_p("string", "Image of the object"),
            generate_type=_p("string", "Mesh style", enum=["Normal", "LowPoly", "Geometry"], default="Normal"),
        ),
        output_description="model_mesh: {url} in GLB format",
        output_mime_types=["model/gltf-binary"],
        pricing=_flat(FAL_API_COSTS["image_to_3d"], 3.0),
        tags=["3d", "mesh", "image-to-3d"],
        poll_interval=5.0,
        poll_timeout=420.0,
    ),
    ToolDefinition(
        id="vision.describe",
        name="Image Description",
        description="Describe the contents of an image or answer a question about it",
        category="vision",
        fal_model="fal-ai/llavav15-13b",
        execution_mode="sync",
        input_schema=_schema(
            ["image_url", "prompt"],
            image_url=IMAGE_URL,
            prompt=_p("string", "Question or instruction about the image"),
        ),
        output_description="output: text",
        output_mime_types=["text/plain"],
        pricing=_flat(FAL_API_COSTS["describe"], 0.5),
        tags=["vision", "caption", "vqa"],
    ),
    ToolDefinition(
        id="text.llm",
        name="Prompt Lab",
        description="General purpose LLM for writing and refining prompts",
        category="text-generation",
        fal_model="fal-ai/any-llm",
        execution_mode="sync",
        input_schema=_schema(
            ["prompt"],
            prompt=_p("string", "User message"),
            system_prompt=_p("string", "Optional system instruction"),
            model=_p("string", "Underlying model name", default="google/gemini-flash-1.5"),
        ),
        output_description="output: text",
        output_mime_types=["text/plain"],
        pricing=_flat(FAL_API_COSTS["llm"], 0.1),
        tags=["text", "llm", "prompt"],
    ),
]
