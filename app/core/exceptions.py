"""Erros de domínio da agenda.

Os serviços levantam estas exceções; o handler registrado em ``app.main``
converte cada uma no status HTTP correspondente.
"""


class AgendaError(Exception):
    status_code = 500
    public_message = None

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail

    @property
    def client_detail(self) -> str:
        return self.public_message or self.detail


class ValidationError(AgendaError):
    status_code = 400


class ForbiddenError(AgendaError):
    status_code = 403


class NotFoundError(AgendaError):
    status_code = 404


class ConflictError(AgendaError):
    status_code = 409


class ExternalServiceError(AgendaError):
    status_code = 502
    public_message = "Falha ao processar o reembolso"


class PersistenceError(AgendaError):
    status_code = 500
    public_message = "Erro interno ao acessar o banco de dados"
