from typing import Optional, Dict

from catalog_sync.core.config import settings


class BaseClient:

    def __init__(
        self,
        base_url: Optional[str] = None,
        session_token: Optional[str] = None,
        session_param: Optional[str] = None,
        timeout: Optional[float] = 30
    ):
        """
        :param base_url: Базовый URL ERP, например "https://erp.example.com/api"
        :param session_token: Номер сессии ERP, передается параметром каждого запроса
        :param session_param: Имя параметра сессии в строке запроса
        :param timeout: Таймаут запросов по умолчанию в секундах
        """
        if base_url:
            self.base_url = base_url.rstrip('/')
        else:
            self.base_url = settings.ERP_BASE_URL.rstrip("/")
        self.session_token = session_token if session_token is not None else settings.ERP_SESSION_TOKEN
        self.session_param = session_param or settings.ERP_SESSION_PARAM
        self.headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        }
        self.timeout = timeout

    def session_params(self) -> Dict[str, str]:
        """Параметры сессии, которые ERP ожидает в каждом запросе."""
        if not self.session_token:
            return {}
        return {self.session_param: self.session_token}
