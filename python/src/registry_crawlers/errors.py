from __future__ import annotations


class CrawlerError(Exception):
    pass


class ConfigError(CrawlerError):
    pass


class DeadlineExceeded(CrawlerError):
    def __init__(self, where: str = "") -> None:
        message = "Run deadline exceeded"
        if where:
            message = f"{message} during {where}"
        super().__init__(message)
        self.where = where


class CaptchaError(CrawlerError):
    pass


class CaptchaSolveError(CaptchaError):
    """The solving service explicitly rejected or failed the job."""

    def __init__(self, code: str, *, retryable: bool = True) -> None:
        super().__init__(f"Captcha solve failed: {code}")
        self.code = code
        self.retryable = retryable


class CaptchaTimeoutError(CaptchaError):
    pass


class CaptchaServiceUnavailable(CaptchaError):
    def __init__(self, message: str, *, failures: int) -> None:
        super().__init__(message)
        self.failures = failures


class ChallengeReusedError(CaptchaError):
    pass


class ParseError(CrawlerError):
    pass


class SiteChangedError(CrawlerError):
    pass


class InvalidTransitionError(CrawlerError):
    pass


class ArtifactExistsError(CrawlerError):
    pass
