"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict

class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value}, ${VAR:?message} and $$ as a literal dollar.
    """
    # Group 1: $$ escape, group 2: VAR name, group 3: modifier, group 4: modifier argument
    PATTERN = re.compile(r'(\$\$)|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([-+?])([^}]*))?\}')

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises KeyError: If a variable is unset and no default is provided.
        """
        def replace(match):
            if match.group(1):
                return '$'
            var_name = match.group(2)
            modifier = match.group(3)
            alt_value = match.group(4)
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if modifier == '?':
                if not value:
                    raise KeyError(f"{var_name}: {alt_value or 'required variable is unset'}")
                return value
            if value is None:
                raise KeyError(f"Variable {var_name} not found in context")
            return value

        return cls.PATTERN.sub(replace, template)
