from formguard.config.settings import (ProxySettings, RateLimitConfig,
                                       SecurityConfig, load_settings)

__all__ = ["ProxySettings", "RateLimitConfig", "SecurityConfig", "load_settings"]
