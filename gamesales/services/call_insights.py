"""
Keyword heuristics that turn a call transcript into sales insights.
"""
from typing import Any, Dict, List, Optional

INSIGHTS_MODEL = "heuristic-mvp-v1"

OBJECTION_RULES = [
    {"key": "preco", "label": "Preço", "patterns": ["preço", "valor", "caro", "investimento"]},
    {"key": "prazo", "label": "Prazo", "patterns": ["prazo", "tempo", "quando", "deadline"]},
    {"key": "suporte", "label": "Suporte", "patterns": ["suporte", "acompanhamento", "pós-venda"]},
    {"key": "decisor", "label": "Decisão compartilhada", "patterns": ["sócio", "time", "aprovar", "decidir"]},
    {
        "key": "concorrencia",
        "label": "Comparação com concorrente",
        "patterns": ["concorr", "outra empresa", "comparando"],
    },
]


def detect_objections(text: str) -> List[Dict[str, str]]:
    lowered = text.lower()
    return [
        {"key": rule["key"], "label": rule["label"]}
        for rule in OBJECTION_RULES
        if any(pattern in lowered for pattern in rule["patterns"])
    ]


def suggest_next_steps(text: str) -> List[str]:
    lowered = text.lower()
    steps = []
    if "proposta" in lowered:
        steps.append("Enviar proposta personalizada")
    if "amanhã" in lowered or "retorno" in lowered:
        steps.append("Agendar follow-up para amanhã")
    if "sócio" in lowered or "decidir" in lowered:
        steps.append("Confirmar decisor e prazo de resposta")
    if not steps:
        steps.append("Registrar próximo contato e confirmar necessidade principal")
    return steps


def suggest_stage(text: str) -> Optional[str]:
    lowered = text.lower()
    if "proposta" in lowered:
        return "proposal"
    if "negoci" in lowered:
        return "negotiation"
    if "entender" in lowered or "necessidade" in lowered:
        return "qualification"
    return None


def extract_insights(transcript: Optional[str]) -> Dict[str, Any]:
    text = transcript or ""
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    next_steps = suggest_next_steps(text)

    suggested_message = " ".join(
        [
            "Olá! Conforme nossa conversa, vou te enviar o material combinado.",
            f"Próximo passo: {next_steps[0]}.",
            "Se fizer sentido, alinhamos os detalhes para avançar ainda essa semana.",
        ]
    )

    return {
        "summary": " ".join(lines[:4])[:500],
        "objections": detect_objections(text),
        "next_steps": next_steps,
        "action_items": ["Registrar resumo da call no deal", *next_steps],
        "suggested_message": suggested_message,
        "suggested_stage": suggest_stage(text),
    }
