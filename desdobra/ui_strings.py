from __future__ import annotations

from typing import Dict, List


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "factor_operacao": [
        {
            "key": "draft",
            "label": "Rascunho",
            "description": "Operacao em montagem, itens ainda podem ser incluidos ou removidos.",
        },
        {
            "key": "sent_to_factor",
            "label": "Enviada ao factor",
            "description": "Versao enviada ao factor e aguardando retorno.",
        },
        {
            "key": "in_adjustment",
            "label": "Em ajuste",
            "description": "Factor devolveu itens recusados ou ajustados para renegociacao.",
        },
        {
            "key": "completed",
            "label": "Concluida",
            "description": "Operacao liquidada com lancamentos gerados. Estado final.",
        },
    ],
    "factor_retorno": [
        {
            "key": "pending",
            "label": "Aguardando retorno",
            "description": "Item ainda sem resposta do factor.",
        },
        {
            "key": "accepted",
            "label": "Aceito",
            "description": "Factor aceitou o item nas condicoes enviadas.",
        },
        {
            "key": "adjusted",
            "label": "Ajustado",
            "description": "Factor aceitou com valor ou vencimento diferente.",
        },
        {
            "key": "rejected",
            "label": "Recusado",
            "description": "Factor recusou o item.",
        },
    ],
    "factor_custodia": [
        {
            "key": "own",
            "label": "Carteira propria",
            "description": "Parcela sob custodia da empresa.",
        },
        {
            "key": "with_factor",
            "label": "Com factor",
            "description": "Parcela descontada e sob custodia do factor.",
        },
        {
            "key": "repurchased",
            "label": "Recomprada",
            "description": "Parcela recomprada do factor.",
        },
    ],
}


ITEM_ACTION_LABELS: Dict[str, str] = {
    "discount": "Desconto",
    "buyback": "Recompra",
    "due_date_change": "Prorrogacao de vencimento",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "factor_created": "Factor cadastrado com sucesso.",
        "operation_created": "Operacao criada em rascunho.",
        "operation_updated": "Operacao atualizada.",
        "item_added": "Item incluido na operacao.",
        "item_removed": "Item removido da operacao.",
        "version_created": "Nova versao gerada.",
        "operation_sent": "Operacao enviada ao factor.",
        "responses_applied": "Retorno do factor aplicado.",
        "operation_completed": "Operacao concluida.",
        "operation_already_completed": "Operacao ja estava concluida.",
        "transition_allowed": "Transicao permitida.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "action_not_allowed_for_status": "Esta acao nao e permitida para o status atual.",
        "factor_not_found": "Factor nao encontrado.",
        "installment_not_found": "Parcela nao encontrada.",
        "invalid_transition": "Mudanca de status nao permitida para esta operacao.",
        "item_not_eligible": "Parcela nao elegivel para esta acao.",
        "item_not_found": "Item nao encontrado na operacao.",
        "item_not_in_operation": "Item informado nao pertence a operacao.",
        "missing_final_due_date": "Item de prorrogacao sem data final de vencimento.",
        "missing_item_response": "Existem itens sem retorno aplicado.",
        "missing_version": "Operacao sem versao enviada nao pode ser concluida.",
        "not_found": "Registro nao encontrado.",
        "operation_conclude_invalid_status": "Somente operacoes enviadas ou em ajuste podem ser concluidas.",
        "operation_empty": "Adicione ao menos um item antes de gerar versao.",
        "operation_not_editable": "Operacao nao pode ser alterada neste status.",
        "operation_not_found": "Operacao nao encontrada.",
        "operation_response_invalid_status": "Operacao nao esta em status de retorno.",
        "operation_version_invalid_status": "Somente operacoes em rascunho ou ajuste podem gerar versao.",
        "seed_disabled": "Carga de dados de demonstracao desabilitada.",
        "stale_operation_status": "A operacao foi alterada por outro usuario. Recarregue e tente novamente.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "validation_error": "Dados informados sao invalidos.",
        "version_not_found": "Versao nao encontrada para a operacao.",
        "adjusted_response_requires_value": "Retorno ajustado exige valor e/ou vencimento ajustado.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def build_status_labels(group: str) -> Dict[str, str]:
    return {item["key"]: item["label"] for item in STATUS_GROUPS.get(group, [])}


def status_label(group: str, key: str | None) -> str:
    normalized = str(key or "").strip()
    return build_status_labels(group).get(normalized, normalized)


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)



def action_label(key: str | None) -> str:
    normalized = str(key or "").strip()
    return ITEM_ACTION_LABELS.get(normalized, normalized)
