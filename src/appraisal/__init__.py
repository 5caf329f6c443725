PIPELINE_VERSION = "2024.1"

CATALOG_PATH = "registry/appraisal_fields.json"
ENUM_MAPS_PATH = "registry/enum_maps.json"
MATERIALS_PATH = "registry/materials.json"
IMAGE_PATTERNS_PATH = "registry/image_patterns.json"
GAZETTEER_PATH = "registry/gazetteer.json"
ROUNDING_PATH = "registry/rounding.json"
PROMPT_PATH = "prompts/appraisal_extraction_v1.json"
