# prompts.py
"""
Prompt construction for every view of the progressive workflow.

The front view is generated from the user's description. Every other view is
an image transformation of the approved front view (and, for side/top/bottom,
the generated back view), so those prompts insist on copying colors and
materials from the references rather than inventing new ones.
"""

from typing import List, Optional

from viewforge.features import ExtractedFeatures

# ===================================================================
# SHARED INSTRUCTION BLOCKS
# ===================================================================

GENERATION_MODE_INSTRUCTIONS = {
    "black_and_white": """
GENERATION STYLE: BLACK & WHITE SKETCH
- Render this view as a BLACK AND WHITE technical sketch/illustration
- Use only grayscale tones, no colors whatsoever
- Clean, professional hand-drawn aesthetic with subtle pencil-like shading
- Maintain clear product details and form definition
- White or light gray background
- IGNORE any color references in the prompt and render everything in grayscale""",
    "minimalist": """
GENERATION STYLE: MINIMALIST
- Minimalist, clean aesthetic
- Limited color palette (2-3 colors maximum)
- Simple, uncluttered composition
- Flat or subtle shading""",
    "detailed": """
GENERATION STYLE: HIGHLY DETAILED
- Maximum detail and realism
- Intricate textures, stitching and material details
- Realistic shadows and highlights
- Professional product photography quality""",
}

LOGO_POSITION_INSTRUCTIONS = {
    "front-left": "Place the logo on the FRONT of the product, on the LEFT side (left chest area for apparel).",
    "front-center": "Place the logo on the FRONT of the product, CENTERED horizontally for maximum visibility.",
    "front-right": "Place the logo on the FRONT of the product, on the RIGHT side (right chest area for apparel).",
    "back-left": "Place the logo on the BACK of the product, upper left area (viewer's left).",
    "back-center": "Place the logo on the BACK of the product, CENTERED between the shoulder blades.",
    "back-right": "Place the logo on the BACK of the product, upper right area (viewer's right).",
    "side-left": "Place the logo on the LEFT SIDE or left sleeve of the product.",
    "side-right": "Place the logo on the RIGHT SIDE or right sleeve of the product.",
    "top": "Place the logo at the TOP area of the product (near the neckline or top surface).",
    "bottom": "Place the logo at the BOTTOM area of the product (near the hem or bottom surface).",
    "custom": "Follow the user's specific instructions for logo placement as provided in their notes.",
}

SKETCH_INSTRUCTIONS = """
SKETCH-TO-DESIGN MODE:
- The attached reference image is a hand-drawn sketch or concept art
- Recreate it as a polished, production-ready design
- Keep the core concept, composition and artistic intent of the sketch"""

REFERENCE_INSTRUCTIONS = """
REFERENCE-INSPIRED DESIGN:
- The attached reference image is for INSPIRATION only, do not copy it directly
- Take its style, palette and mood and create an ORIGINAL design"""

OUTPUT_SPEC = """
OUTPUT SPECIFICATIONS:
- Pure white background (#FFFFFF)
- 720 x 720 pixels
- Same lighting as the reference"""

FORBIDDEN = """
FORBIDDEN:
- Creating a "similar" product instead of the EXACT product from the references
- Changing ANY colors, proportions, style or materials
- Adding or removing features"""


def generation_mode_instructions(mode: Optional[str]) -> str:
    if not mode or mode == "regular":
        return ""
    return GENERATION_MODE_INSTRUCTIONS.get(mode, "")


def logo_position_instructions(position: Optional[str]) -> str:
    instruction = LOGO_POSITION_INSTRUCTIONS.get(position or "", LOGO_POSITION_INSTRUCTIONS["front-center"])
    return (
        f"{instruction}\n"
        "CRITICAL: The logo MUST appear at this exact position. Do NOT place it elsewhere unless instructed."
    )


def _join(blocks: List[str]) -> str:
    return "\n".join(block.strip("\n") for block in blocks if block).strip() + "\n"


# ===================================================================
# FRONT VIEW
# ===================================================================

def build_front_view_prompt(
    user_prompt: str,
    reference_image: Optional[str] = None,
    logo_image: Optional[str] = None,
    logo_position: Optional[str] = None,
    note: Optional[str] = None,
    tool_type: Optional[str] = None,
    generation_mode: Optional[str] = None,
) -> str:
    """Front view prompt with logo placement, user notes, tool type and style mode."""
    blocks = [
        "Generate a single professional product image showing the FRONT VIEW of the product described below.",
        f"PRODUCT DESCRIPTION:\n{user_prompt.strip()}",
        """
REQUIREMENTS:
- Straight-on frontal camera angle, product centered and fully visible
- Photorealistic materials and lighting, production-ready design
- No people, models, mannequins or props
- No text overlays or watermarks""",
        OUTPUT_SPEC,
    ]

    if reference_image:
        if tool_type == "sketch":
            blocks.append(SKETCH_INSTRUCTIONS)
        elif tool_type == "reference":
            blocks.append(REFERENCE_INSTRUCTIONS)
        else:
            blocks.append("""
REFERENCE IMAGE:
- A previous image of this product is attached
- Keep its overall shape, camera angle and composition unless the description asks otherwise""")

    if logo_image:
        blocks.append(
            "LOGO:\n- A logo image is attached. Apply it to the product cleanly and legibly.\n"
            f"LOGO PLACEMENT REQUIREMENT:\n{logo_position_instructions(logo_position)}"
        )

    if note:
        blocks.append(f"SPECIAL USER INSTRUCTIONS:\n{note.strip()}")

    blocks.append(generation_mode_instructions(generation_mode))
    return _join(blocks)


def append_feedback(previous_prompt: str, feedback: str) -> str:
    """Edit iterations keep the previous prompt and add the user's feedback at the end."""
    return f"{previous_prompt.rstrip()}\n\nUser feedback: {feedback.strip()}"


# ===================================================================
# REMAINING VIEWS
# ===================================================================

# view -> (task description, rotation/camera, extra checks)
VIEW_TRANSFORMS = {
    "back": (
        "You have been given a FRONT VIEW image of a product. TRANSFORM this exact image to show the BACK VIEW.",
        "Rotate the existing product 180 degrees to show the back.",
        ["Your output MUST look like the reference image photographed from behind."],
    ),
    "side": (
        "You have reference images of a product (FRONT and BACK views). TRANSFORM them to show the SIDE VIEW of the EXACT SAME product.",
        "Rotate the existing product 90 degrees to show its side profile.",
        [
            "Wheels, feet or base IDENTICAL to the front/back views",
            "Handles, straps and accessories IDENTICAL to the front/back views",
        ],
    ),
    "top": (
        "You have reference images of a product (FRONT and BACK views). TRANSFORM them to show the TOP VIEW (bird's eye) of the EXACT SAME product.",
        "View the existing product from directly above.",
        [
            "Top surface IDENTICAL in color to the body shown in front/back",
            "Visible closures, zippers or straps in the same style as front/back",
        ],
    ),
    "bottom": (
        "You have reference images of a product (FRONT and BACK views). TRANSFORM them to show the BOTTOM VIEW (underside) of the EXACT SAME product.",
        "View the existing product from directly below.",
        [
            "Bottom surface matches the body color from front/back",
            "Wheels, feet and hardware visible from below match the front/back style",
        ],
    ),
}


def describe_features(features: Optional[ExtractedFeatures]) -> str:
    features = features or ExtractedFeatures()
    if features.colors:
        colors = ", ".join(f"{c.name} ({c.hex})" if c.hex else c.name for c in features.colors)
        color_line = f"- Main colors: {colors}"
    else:
        color_line = "- Colors: sample the EXACT colors from the reference image(s)"
    materials = ", ".join(features.materials) if features.materials else "visible in the reference"
    key_elements = ", ".join(features.key_elements) if features.key_elements else "visible in the reference"
    return f"THE REFERENCE SHOWS:\n{color_line}\n- Materials: {materials}\n- Key features: {key_elements}"


def structural_reference_instructions(view: str) -> str:
    source = "FRONT VIEW" if view == "back" else "FRONT VIEW and BACK VIEW"
    return f"""
PREVIOUS REVISION - STRUCTURAL REFERENCE ONLY:
A previous version of this {view} view is attached for STRUCTURAL reference only.
- Use it ONLY for camera angle, product positioning and composition
- DO NOT copy colors, materials or design from the previous revision
- ALL design details MUST come from the {source} reference"""


def logo_view_instructions(view: str) -> str:
    return f"""
LOGO PLACEMENT ({view.upper()} VIEW):
- If the logo appears on the product, show it where it would naturally be visible from this angle
- Keep the same logo style and size as the other views"""


def build_view_prompt(
    view: str,
    features: Optional[ExtractedFeatures] = None,
    has_logo: bool = False,
    generation_mode: Optional[str] = None,
    has_structural_reference: bool = False,
) -> str:
    """Prompt for one of back/side/top/bottom."""
    if view not in VIEW_TRANSFORMS:
        raise ValueError(f"No prompt template for view '{view}'")
    task, camera, checks = VIEW_TRANSFORMS[view]

    mandatory = [
        "- EXACT same product shape, do not modify",
        "- EXACT same colors, sampled directly from the reference",
        "- EXACT same materials, textures, size and proportions",
        "- EXACT same style level and lighting quality",
    ] + [f"- {check}" for check in checks]

    blocks = [
        "IMAGE TRANSFORMATION TASK - NOT GENERATION",
        task,
        "This is an IMAGE EDITING task. The reference images ARE the product, do not reimagine it.",
        generation_mode_instructions(generation_mode),
        describe_features(features),
        structural_reference_instructions(view) if has_structural_reference else "",
        f"YOUR TASK:\n{camera}",
        "MANDATORY - COPY EXACTLY FROM REFERENCES:\n" + "\n".join(mandatory),
        logo_view_instructions(view) if has_logo else "",
        OUTPUT_SPEC,
        FORBIDDEN,
    ]
    return _join(blocks)
