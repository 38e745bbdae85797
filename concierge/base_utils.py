# concierge/base_utils.py


import json
import logging
import re

import commentjson
import yaml
from json_repair import repair_json


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("concierge")


class ConciergeError(Exception):
    """Misuse or configuration problems raised to callers."""


ANSI_COLORS = {
    "red": "31", "green": "32", "yellow": "33", "blue": "34",
    "magenta": "35", "cyan": "36", "bright_black": "90",
}


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None):
        """Log `text` at INFO, wrapped in an ANSI color when one is named."""
        code = ANSI_COLORS.get((color or "").lower())
        message = f"\033[{code}m{text}\033[0m" if code else str(text)
        logger.info(message)

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value)
        except TypeError:
            return str(value).strip()

    def load_fault_tolerant_json(self, json_str):
        """
        Attempts to load a JSON-like fragment the agent leaked into its prose.

        Tries, in order: strict json, commentjson (tolerates comments),
        yaml (tolerates unquoted keys / single quotes) and finally json_repair.
        Returns the parsed object, or None when nothing produced a dict/list.
        Never raises: the fragments come from an untrusted text stream.
        """
        if not isinstance(json_str, str) or not json_str.strip():
            return None

        def load_json(candidate):
            err = ""
            try:
                return json.loads(candidate), ""
            except ValueError as e:
                err = str(e)
            try:
                return commentjson.loads(candidate), ""
            except Exception as e:
                err += "\n--\n" + str(e)
            try:
                data = yaml.safe_load(candidate)
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing produced a scalar."
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        cleaned = self.clean_triple_backticks(json_str).strip()
        data, err = load_json(cleaned)
        if isinstance(data, (dict, list)):
            return data

        try:
            repaired = repair_json(cleaned)
        except Exception as e:
            logger.debug(f"load_fault_tolerant_json: repair_json failed: {e}")
            return None
        r_data, r_err = load_json(repaired) if isinstance(repaired, str) else (None, "")
        if isinstance(r_data, (dict, list)) and r_data:
            return r_data

        logger.debug(f"load_fault_tolerant_json: giving up on fragment: {err}\n{r_err}")
        return None
