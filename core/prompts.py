"""
Prompt builders for the simulated customer and the evaluator.

The closing-threshold policy (how many good turns a customer of a given
tier needs before accepting) is read from PracticeConfig.closing_thresholds.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import CustomerMode, CustomerProfile, DifficultyLevel, PracticeSettings, Product

PRODUCT_AUDIENCE = {
    Product.CONTIGO: "Personas que necesitan seguro de vida",
    Product.TU_NEGOCIO: "Pequeños empresarios/emprendedores",
    Product.TU_CASA: "Propietarios preocupados por su hogar",
    Product.TU_COMPRA: "Consumidores que hacen compras importantes",
}

MODE_BEHAVIOUR = {
    CustomerMode.CURIOUS: "Hace muchas preguntas, quiere entender todo",
    CustomerMode.DISTRUSTFUL: "Escéptico, busca pruebas, compara con competencia",
    CustomerMode.RUSHED: "Directo, sin tiempo, quiere solo lo esencial",
}

MODE_ENTHUSIASM = {
    CustomerMode.CURIOUS: "abierto, con interés genuino",
    CustomerMode.DISTRUSTFUL: "frío, dudoso, busca defectos",
    CustomerMode.RUSHED: "cortante, con prisa, quiere lo esencial",
}

DIFFICULTY_BEHAVIOUR = {
    DifficultyLevel.EASY: "Eres MUY accesible y positivo. Quieres que te convenzan. "
                          "Haz 1-2 preguntas básicas y acepta si te responden bien.",
    DifficultyLevel.INTERMEDIATE: "Eres escéptico moderado. Haces 3-4 preguntas pero te convences "
                                  "con buenos ejemplos concretos y comparaciones.",
    DifficultyLevel.HARD: "Eres muy crítico. Cuestionas todo, comparas con competidores y buscas defectos.",
    DifficultyLevel.ADVANCED: "Eres extremadamente analítico. Pides cifras exactas, términos y condiciones.",
    DifficultyLevel.SUPER_AMBASSADOR: "Eres durísimo. Has tenido malas experiencias previas y repites objeciones.",
    DifficultyLevel.LEGEND: "Eres prácticamente imposible. Interrumpes, cambias de tema y nunca aceptas fácilmente.",
}

OBJECTION_COUNT = {
    DifficultyLevel.EASY: "3 objeciones básicas y directas",
    DifficultyLevel.INTERMEDIATE: "4-5 objeciones más elaboradas",
    DifficultyLevel.HARD: "5-6 objeciones complejas y entrelazadas",
    DifficultyLevel.ADVANCED: "5-6 objeciones complejas y entrelazadas",
    DifficultyLevel.SUPER_AMBASSADOR: "6 o más objeciones muy específicas, técnicas o emocionales",
    DifficultyLevel.LEGEND: "6 o más objeciones muy específicas, técnicas o emocionales",
}

ACCEPTANCE_PHRASES = [
    "Está bien, me interesa. ¿Qué necesito?",
    "Suena bien. ¿Cómo lo solicito?",
    "Ok, me convenciste. ¿Cuál es el siguiente paso?",
    "Va, lo quiero. ¿Qué documentos pido?",
    "Sale, ¿dónde lo pido?",
]


def closing_threshold(level: DifficultyLevel, thresholds: dict[str, int]) -> int:
    """Good turns needed before the customer may accept. Unknown tiers use Intermedio."""
    return thresholds.get(level.value, thresholds.get(DifficultyLevel.INTERMEDIATE.value, 4))


def conversation_phase(turn_number: int) -> str:
    if turn_number <= 2:
        return "inicial"
    if turn_number <= 4:
        return "media"
    return "final"


def phase_objections(profile: CustomerProfile, phase: str) -> list[str]:
    if phase == "inicial":
        return profile.objections[:2]
    if phase == "media":
        return profile.objections[2:4]
    return profile.objections[4:]


# ──────────────────────────────────────────────────────────────
#  Profile generation
# ──────────────────────────────────────────────────────────────

def profile_prompt(settings: PracticeSettings) -> str:
    return f"""Eres un experto en crear perfiles realistas de clientes mexicanos para simulaciones de ventas.

Genera UN perfil único y realista:

Producto: {settings.product.value} ({PRODUCT_AUDIENCE[settings.product]})
Modo: {settings.mode.value} ({MODE_BEHAVIOUR[settings.mode]})
Nivel de dificultad: {settings.difficulty_level.value}

- Nombre típico mexicano, edad entre 20 y 65 años, ocupación acorde al producto.
- Objeciones: {OBJECTION_COUNT[settings.difficulty_level]}.
- 3-5 preguntas comunes.

Devuelve SOLO un objeto JSON con las claves:
name (string), age (integer), occupation (string), context (string),
objections (lista de strings), commonQuestions (lista de strings),
attitudeTrait (string)."""


# ──────────────────────────────────────────────────────────────
#  Avatar (simulated customer) turns
# ──────────────────────────────────────────────────────────────

def avatar_system_prompt(
    product: Product,
    profile: CustomerProfile,
    turn_number: int,
    thresholds: dict[str, int],
    history: Optional[list[dict[str, str]]] = None,
) -> str:
    phase = conversation_phase(turn_number)
    focus = phase_objections(profile, phase) or profile.objections[-1:]
    needed = closing_threshold(profile.difficulty_level, thresholds)

    objections = "\n".join(f"{i}. {o}" for i, o in enumerate(profile.objections, 1))
    questions = "\n".join(f"{i}. {q}" for i, q in enumerate(profile.common_questions, 1))
    phrases = "\n".join(f'- "{p}"' for p in ACCEPTANCE_PHRASES)

    prompt = f"""# TU IDENTIDAD
Eres {profile.name}, {profile.age} años, {profile.occupation}.
{profile.context}

# TU PERSONALIDAD
{profile.attitude_trait}

# NIVEL DE DIFICULTAD: {profile.difficulty_level.value}
{DIFFICULTY_BEHAVIOUR[profile.difficulty_level]}

# PRODUCTO QUE TE ESTÁN VENDIENDO
{product.value}

# TUS OBJECIONES PRINCIPALES
{objections}

# PREGUNTAS QUE DEBES HACER
{questions or "- (ninguna)"}

# FASE ACTUAL: {phase.upper()}
En esta fase, enfócate en: {" / ".join(focus)}

# CIERRE DE VENTA
Estás en el turno {turn_number} de la conversación.
No aceptes antes de {needed} intercambios buenos del vendedor.
Si decides aceptar, usa una de estas frases:
{phrases}

# INSTRUCCIONES DE RESPUESTA
- SIEMPRE responde en español mexicano
- Máximo 2-3 frases (≤30 palabras)
- Presenta una objeción cada 2 turnos si aún no estás convencido
- NO actúes como vendedor, eres el CLIENTE"""

    if history:
        lines = [
            f"Vendedor: {m['text']}" if m["sender"] == "user" else f"Tú ({profile.name}): {m['text']}"
            for m in history
        ]
        prompt += "\n\n# HISTORIAL DE LA CONVERSACIÓN\n" + "\n".join(lines)

    return prompt + f"\n\n# RESPONDE AHORA COMO {profile.name.upper()}"


def realtime_instructions(product: Product, mode: CustomerMode,
                          profile: Optional[CustomerProfile] = None) -> str:
    """Behavioural instructions for the realtime voice agent."""
    instructions = f"""# Personality and Tone
## Identity
Eres un cliente potencial de Aviva Crédito en México interesado en {product.value}.
No eres asesor ni vendedor: solo cliente que escucha y responde.

## Task
- Escucha lo que dice el vendedor.
- Responde con frases cortas y realistas (máx. 2 oraciones, ≤25 palabras).
- Haz preguntas concretas y objeciones comunes.
- Cada 2-3 turnos introduce una objeción nueva.
- Al acercarse el final, exige una propuesta concreta para decidir hoy.

## Level of Enthusiasm
{mode.value}: {MODE_ENTHUSIASM[mode]}.

## Level of Formality
Casual-profesional. Usa "tú". Habla siempre en español mexicano."""

    if profile is not None:
        objections = "\n".join(f"- {o}" for o in profile.objections)
        instructions += f"""

## Your Profile
Eres {profile.name}, {profile.age} años, {profile.occupation}. {profile.context}
Rasgo: {profile.attitude_trait}
Objeciones:
{objections}"""
    return instructions


# ──────────────────────────────────────────────────────────────
#  Evaluation
# ──────────────────────────────────────────────────────────────

EVALUATION_SYSTEM = """Eres un experto evaluador de técnicas de ventas con 20 años de experiencia \
en la industria financiera mexicana. Sé justo pero exigente y usa la escala completa (1-10).

Devuelve SOLO un objeto JSON con enteros de 1 a 10 para:
greeting, needIdentification, productPresentation, benefitsCommunication,
objectionHandling, closing, empathy, clarity, overallScore
y una clave feedback (string en español con 2-3 fortalezas, 2-3 áreas de mejora
y un consejo práctico)."""


def evaluation_prompt(product: Product, profile: CustomerProfile,
                      conversation: list[dict[str, str]]) -> str:
    lines = [
        f"Vendedor: {m['text']}" if m["sender"] == "user" else f"Cliente: {m['text']}"
        for m in conversation
    ]
    return f"""CONTEXTO DE LA SIMULACIÓN:
- Producto: {product.value}
- Cliente: {profile.name}, {profile.occupation}
- Perfil actitudinal: {profile.attitude_trait}
- Objeciones esperadas: {", ".join(profile.objections)}

CONVERSACIÓN A EVALUAR:
{chr(10).join(lines) if lines else "(sin intercambios)"}"""
