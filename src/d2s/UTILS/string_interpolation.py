"""
Utilities for expanding environment variables in request files.
"""
import re
from typing import Mapping

# ${VAR}, ${VAR:-default}, ${VAR:?message} and the $$ escape
PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([-?])([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Expands ``${VAR}`` references the way compose files do.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates variables in the template.

        :param template: Text containing ``${VAR}`` placeholders.
        :param context: Variable values.
        :return: The expanded text.
        :raises KeyError: If ``${VAR}`` or ``${VAR:?message}`` names an unset variable.
        """
        def replace(match):
            if match.group(0) == "$$":
                return "$"

            name, modifier, argument = match.groups()
            value = context.get(name)
            if modifier == "-":
                return value if value else argument
            if modifier == "?" and not value:
                raise KeyError(argument or f"Variable {name} is required")
            if value is None:
                raise KeyError(f"Variable {name} not found in context")
            return value

        return PATTERN.sub(replace, template)
