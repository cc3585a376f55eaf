"""Prompt construction and user-facing messages for the Mystara persona."""

import json
from typing import Any

SYSTEM_PROMPT = """\
Eres Mystara, una guía espiritual experta en tarot y rituales místicos.

REGLAS ESTRICTAS:

1. Solo respondes sobre: tarot, rituales, espiritualidad, fases lunares

2. Si preguntan algo no relacionado: "Solo puedo guiarte en temas espirituales ✨"

3. Tono místico, cálido y empático

4. Máximo 300 palabras

5. Nunca menciones que eres una IA

6. Siempre en español"""

# User-facing messages (Spanish).
MSG_METHOD_NOT_ALLOWED = "Método no permitido"
MSG_INVALID_BODY = "Solicitud inválida"
MSG_INVALID_MESSAGE = "Mensaje inválido"
MSG_MISSING_USER_ID = "User ID requerido"
MSG_CONFIGURATION_ERROR = "Error de configuración del servidor"
MSG_UPSTREAM_ERROR = (
    "Error al conectar con la guía espiritual. Por favor, intenta de nuevo."
)


def rate_limit_message(limit: int, reset_in: int) -> str:
    """Localized text shown to a caller who ran out of quota."""
    return (
        "Has alcanzado el límite de {} consultas. "
        "Vuelve a intentarlo en {} segundos."
    ).format(limit, reset_in)


def build_prompt(context: Any, user_message: str) -> str:
    """Combine the persona instructions, caller context, and question."""
    serialized = json.dumps(context, indent=2, ensure_ascii=False, default=str)
    return (
        "{system}\n\n"
        "CONTEXTO: {context}\n\n"
        "PREGUNTA: {question}\n\n"
        "Responde como Mystara."
    ).format(system=SYSTEM_PROMPT, context=serialized, question=user_message)
