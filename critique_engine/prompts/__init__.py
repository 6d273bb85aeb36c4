from .json_loader import clear_prompt_cache, load_prompt_json

__all__ = ["clear_prompt_cache", "load_prompt_json"]
