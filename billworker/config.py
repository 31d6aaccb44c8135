"""
Configuration management using Pydantic for validation and type safety.
"""

from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseModel):
    """Main application configuration."""
    name: str = "Light Invoice Worker"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"


class ViewportConfig(BaseModel):
    """Browser viewport configuration."""
    width: int = 1366
    height: int = 768


class AutomationConfig(BaseModel):
    """Browser automation configuration."""
    mode: str = "browser"  # browser or http
    headless: bool = True
    browser: str = "chromium"
    stealth_enabled: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    locale: str = "pt-BR"
    timezone: str = "America/Sao_Paulo"
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    debug_screenshots: bool = True


class TimeoutsConfig(BaseModel):
    """Timeouts in milliseconds."""
    default: int = 60000
    navigation: int = 30000
    bills_navigation: int = 60000
    login_form: int = 20000
    error_banner: int = 5000
    surface_signal: int = 10000
    listing: int = 10000
    expand: int = 5000
    ajax_wait_attach: int = 2000
    ajax_wait_detach: int = 10000
    paid_ajax_wait_detach: int = 15000
    content_race: int = 15000
    loading_message: int = 15000
    reason_modal: int = 5000
    download: int = 60000
    http_request: int = 30000


class LoginConfig(BaseModel):
    """Login workflow tuning."""
    max_attempts: int = 3
    retry_delay: float = 5.0
    # The portal's binding layer needs time to register the injected token
    settle_after_injection: float = 5.0
    post_submit_settle: float = 3.0
    bot_rejection_wait: float = 3.0
    bot_rejection_phrases: List[str] = Field(
        default_factory=lambda: ["nao e um robo", "nao sou um robo", "recaptcha", "not a robot"]
    )


class CaptchaConfig(BaseModel):
    """CAPTCHA service configuration."""
    service: str = "anticaptcha"
    api_url: str = "https://api.anti-captcha.com"
    api_key: str = ""
    task_type: str = "RecaptchaV2TaskProxyless"
    poll_interval: float = 3.0
    max_polls: int = 200
    request_timeout: int = 30


class PortalConfig(BaseModel):
    """Light Agência Virtual addresses and page markers."""
    base_url: str = "https://agenciavirtual.light.com.br"
    login_url: str = "https://agenciavirtual.light.com.br/portal/"
    login_post_url: str = "https://agenciavirtual.light.com.br/portal/Login.aspx"
    post_login_marker: str = "login.aspx"
    greeting_text: str = "Bem vindo"
    open_bills_url: str = "https://agenciavirtual.light.com.br/AGV_Segunda_Via_VW/"
    open_bills_marker: str = "AGV_Segunda_Via_VW"
    paid_bills_url: str = (
        "https://agenciavirtual.light.com.br/AGV_Comprovante_Conta_Paga_VW/Comprovante_Conta_Paga.aspx"
    )
    paid_bills_marker: str = "Comprovante_Conta_Paga"
    account_current_text: str = "Você está em dia"
    loading_message_text: str = "Carregando"
    default_site_key: str = "6LcLDd8UAAAAAKr1i2M1bsq6c9dg6vAGAmJGAROF"
    session_cookie: str = "AGV_UserProvider.sid"
    username_cookie: str = "agv-username"
    download_reason: str = "Outros"


class StorageConfig(BaseModel):
    """Local artifact storage layout."""
    directory: str = "./storage"
    key_value_store: str = "default"
    dataset: str = "default"
    downloads: str = ""  # defaults to the storage directory


class LoggingConfig(BaseModel):
    """Logging configuration."""
    directory: str = "./logs"
    file_name: str = "worker_{date}.log"
    rotation: str = "1 day"
    retention: str = "7 days"
    compression: str = "gz"
    format: str = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    run_log: str = "run.log"


class ProxyConfig(BaseModel):
    """Proxy configuration."""
    enabled: bool = False
    url: str = ""
    username: str = ""
    password: str = ""

    def as_httpx_url(self) -> Optional[str]:
        if not self.enabled or not self.url:
            return None
        if self.username and "://" in self.url:
            scheme, rest = self.url.split("://", 1)
            return f"{scheme}://{self.username}:{self.password}@{rest}"
        return self.url


class Config(BaseModel):
    """Root configuration."""
    app: AppConfig = Field(default_factory=AppConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    login: LoginConfig = Field(default_factory=LoginConfig)
    captcha: CaptchaConfig = Field(default_factory=CaptchaConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)


class EnvOverrides(BaseSettings):
    """Environment variables that take precedence over the config file."""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    anti_captcha_key: Optional[str] = None
    app_log_level: Optional[str] = None
    headless: Optional[bool] = None
    worker_mode: Optional[str] = None
    apify_local_storage_dir: Optional[str] = None
    proxy_url: Optional[str] = None
    proxy_username: Optional[str] = None
    proxy_password: Optional[str] = None


class ConfigLoader:
    """Configuration loader with environment variable support."""

    DEFAULT_PATHS: Tuple[Path, ...] = (
        Path("config/config.yaml"),
        Path("config.yaml"),
        Path(__file__).parent.parent / "config" / "config.yaml",
    )

    def __init__(self, config_path: Optional[str] = None, env: Optional[EnvOverrides] = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Explicit YAML file; must exist when given
            env: Environment overrides (read from the process env when None)
        """
        if config_path is not None and not Path(config_path).exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        if config_path is None:
            for path in self.DEFAULT_PATHS:
                if path.exists():
                    config_path = str(path)
                    break

        self.config_path = Path(config_path) if config_path else None
        self._env = env
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load and validate configuration."""
        if self._config is not None:
            return self._config

        config_data: dict = {}
        if self.config_path is not None:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}

        config_data = self._apply_env_overrides(config_data)

        self._config = Config(**config_data)
        return self._config

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config."""
        env = self._env if self._env is not None else EnvOverrides()

        if env.app_log_level:
            config_data.setdefault("app", {})["log_level"] = env.app_log_level
        if env.anti_captcha_key:
            config_data.setdefault("captcha", {})["api_key"] = env.anti_captcha_key
        if env.headless is not None:
            config_data.setdefault("automation", {})["headless"] = env.headless
        if env.worker_mode:
            config_data.setdefault("automation", {})["mode"] = env.worker_mode
        if env.apify_local_storage_dir:
            config_data.setdefault("storage", {})["directory"] = env.apify_local_storage_dir

        if env.proxy_url:
            config_data.setdefault("proxy", {})["enabled"] = True
            config_data.setdefault("proxy", {})["url"] = env.proxy_url
        if env.proxy_username:
            config_data.setdefault("proxy", {})["username"] = env.proxy_username
        if env.proxy_password:
            config_data.setdefault("proxy", {})["password"] = env.proxy_password

        return config_data

    @property
    def config(self) -> Config:
        """Get loaded configuration."""
        if self._config is None:
            return self.load()
        return self._config


# Global config instance
_config_loader: Optional[ConfigLoader] = None


def get_config() -> Config:
    """Get global configuration instance."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader.config


def reload_config(config_path: Optional[str] = None) -> Config:
    """Reload configuration from file."""
    global _config_loader
    _config_loader = ConfigLoader(config_path)
    return _config_loader.load()
