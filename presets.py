from __future__ import annotations

from typing import Dict, List

from batch import OutputSpec


OUTPUT_SPECS: List[OutputSpec] = [
    OutputSpec(
        id="aesthetic_images",
        count=4,
        title="Aesthetic Set",
        prompt=(
            "Create 4 high-quality aesthetic images featuring ONLY the uploaded perfume bottle exactly as it is. "
            "Do NOT modify or distort the product. Use elegant, minimal, and cool-toned backgrounds with soft lighting. "
            "Highlight the perfume bottle. Each image should be visually appealing, professional, and suitable for "
            "social media promotion."
        ),
    ),
    OutputSpec(
        id="text_ad_image",
        count=1,
        title="Text Ad",
        prompt=(
            "Generate 1 creative advertisement-style image featuring the same perfume bottle exactly as it is. "
            "Include modern, bold text related to perfume marketing, such as slogans or taglines. Design should be "
            "clean, eye-catching, and professional, suitable for ads or banners."
        ),
    ),
    OutputSpec(
        id="model_images",
        count=5,
        title="Models",
        prompt=(
            "Generate 5 images with a single professional male OR female model promoting the uploaded perfume bottle. "
            "Each image must feature only one model (no multiple models together). The perfume bottle must remain "
            "unchanged and clearly visible. The model should look elegant, confident, and luxurious. Use professional "
            "studio-style lighting, realistic skin tones, and high-fashion poses. Each image should feel like a "
            "high-end perfume advertisement."
        ),
    ),
    OutputSpec(
        id="creative_ad_images",
        count=3,
        title="Creative Ads",
        prompt=(
            "Generate 3 unique creative advertisement images for the same perfume bottle. Each image should have a "
            "completely different style: one artistic, one luxury lifestyle, one modern minimal. Do not alter the "
            "product. Images should be visually striking, professional, and ad-ready."
        ),
    ),
]

SPECS_BY_ID: Dict[str, OutputSpec] = {spec.id: spec for spec in OUTPUT_SPECS}
