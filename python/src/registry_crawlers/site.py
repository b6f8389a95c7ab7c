from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

from selenium import webdriver
from selenium.common.exceptions import (
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webdriver import WebDriver
from selenium.webdriver.remote.webelement import WebElement
from selenium.webdriver.support.ui import WebDriverWait

from registry_crawlers.deadline import Deadline
from registry_crawlers.errors import DeadlineExceeded
from registry_crawlers.models import Challenge, ChallengeKind, SolvedToken

INJECT_TOKEN_JS = """
const token = arguments[0];
for (const name of ['g-recaptcha-response', 'h-captcha-response']) {
    document.querySelectorAll(`textarea[name="${name}"], #${name}`).forEach((el) => {
        el.style.display = 'block';
        el.value = token;
        el.innerHTML = token;
    });
}
const widget = document.querySelector('[data-sitekey][data-callback]');
if (widget) {
    const callback = window[widget.getAttribute('data-callback')];
    if (typeof callback === 'function') {
        callback(token);
    }
}
"""


@dataclass(frozen=True)
class SiteConfig:
    search_url: str = "https://apps.ilsos.gov/businessentitysearch/"
    search_method_selector: str = "input[type='radio'][value='f']"
    search_input_selector: str = "#searchValue"
    search_submit_selector: str = "button[type='submit'], input[type='submit']"
    captcha_image_selector: str = "img#captchaImage, img.captcha-image"
    captcha_answer_selector: str = "input[name='captchaAnswer'], input#captcha"
    captcha_submit_selector: str = "button[type='submit'], input[type='submit']"
    response_ready_selector: str = (
        ".g-recaptcha, .h-captcha, iframe[src*='recaptcha'], img#captchaImage, "
        "table.entity-details, dl.entity-details"
    )
    timeout_seconds: int = 20
    human_pacing: bool = True


def build_driver(headless: bool) -> WebDriver:
    options = ChromeOptions()
    options.add_argument("--window-size=1600,1200")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    if headless:
        options.add_argument("--headless=new")
    return webdriver.Chrome(options=options)


def _is_stale(element: WebElement) -> bool:
    try:
        element.is_enabled()
    except StaleElementReferenceException:
        return True
    return False


class SeleniumRegistrySite:
    """One browser session against the registry.

    Every method takes the run deadline: waits are capped to the per-call timeout and to
    whatever is left of the run, and a wait that fails after the deadline has passed is
    reported as ``DeadlineExceeded`` rather than a plain Selenium timeout.
    """

    def __init__(self, driver: WebDriver, config: SiteConfig, logger: logging.Logger) -> None:
        self.driver = driver
        self.config = config
        self.logger = logger

    @property
    def current_url(self) -> str:
        return self.driver.current_url

    @property
    def title(self) -> str:
        return self.driver.title

    @property
    def page_source(self) -> str:
        return self.driver.page_source

    def save_screenshot(self, filename: str) -> bool:
        return self.driver.save_screenshot(filename)

    def open_search(self, deadline: Deadline) -> str:
        deadline.check("open search page")
        self.logger.info("Opening registry search page: %s", self.config.search_url)
        self.driver.set_page_load_timeout(max(1, int(deadline.cap(self.config.timeout_seconds))))
        try:
            self.driver.get(self.config.search_url)
        except TimeoutException as exc:
            if deadline.expired():
                raise DeadlineExceeded("open search page") from exc
            raise
        self._wait(deadline, "search page ready", self._dom_ready)
        self._wait(
            deadline,
            "search input",
            lambda d: len(d.find_elements(By.CSS_SELECTOR, self.config.search_input_selector)) > 0,
        )
        return self.driver.page_source

    def submit_search(self, file_number: str, deadline: Deadline) -> str:
        deadline.check("submit search")
        methods = self.driver.find_elements(By.CSS_SELECTOR, self.config.search_method_selector)
        if methods:
            self._click(methods[0])

        search_input = self.driver.find_element(By.CSS_SELECTOR, self.config.search_input_selector)
        search_input.clear()
        search_input.send_keys(file_number)
        self.logger.info("Search input set: %s=%s", self.config.search_input_selector, file_number)

        submit = self.driver.find_element(By.CSS_SELECTOR, self.config.search_submit_selector)
        self._submit_and_wait(submit, deadline, "search response")
        self.logger.info("Search response URL: %s", self.driver.current_url)
        return self.driver.page_source

    def capture_challenge_image(self, deadline: Deadline) -> str:
        deadline.check("capture challenge image")
        images = self.driver.find_elements(By.CSS_SELECTOR, self.config.captcha_image_selector)
        if not images:
            return ""
        return images[0].screenshot_as_base64

    def submit_token(self, challenge: Challenge, token: SolvedToken, deadline: Deadline) -> str:
        deadline.check("submit solved token")
        if challenge.kind is ChallengeKind.IMAGE:
            answer = self.driver.find_element(By.CSS_SELECTOR, self.config.captcha_answer_selector)
            answer.clear()
            answer.send_keys(token.value)
        else:
            self.driver.execute_script(INJECT_TOKEN_JS, token.value)
        self.logger.info("Solved token injected for challenge kind=%s job_id=%s", challenge.kind.value, token.job_id)

        submits = self.driver.find_elements(By.CSS_SELECTOR, self.config.captcha_submit_selector)
        if submits:
            self._submit_and_wait(submits[0], deadline, "token response")
        else:
            self._wait(deadline, "token response", self._dom_ready)
        return self.driver.page_source

    def pace(self, deadline: Deadline) -> None:
        if not self.config.human_pacing:
            return

        first_pause = min(random.uniform(0.4, 1.2), deadline.remaining())
        time.sleep(first_pause)
        self.logger.info("Human pacing: pause %.2fs", first_pause)

        try:
            viewport_height = int(self.driver.execute_script("return window.innerHeight || 900;"))
        except WebDriverException:
            viewport_height = 900

        down_px = random.randint(max(80, int(viewport_height * 0.10)), max(180, int(viewport_height * 0.28)))
        up_px = random.randint(max(30, int(viewport_height * 0.05)), max(120, int(viewport_height * 0.16)))
        self.driver.execute_script("window.scrollBy(0, arguments[0]);", down_px)
        time.sleep(min(random.uniform(0.2, 0.7), deadline.remaining()))
        self.driver.execute_script("window.scrollBy(0, arguments[0]);", -up_px)
        self.logger.info("Human pacing: scrolled down %dpx and up %dpx", down_px, up_px)

    def close(self) -> None:
        self.driver.quit()

    def _dom_ready(self, driver: WebDriver) -> bool:
        return driver.execute_script("return document.readyState") == "complete"

    def _click(self, element: WebElement) -> None:
        try:
            element.click()
        except WebDriverException:
            self.logger.warning("Standard click failed, retrying via JS click.")
            self.driver.execute_script("arguments[0].click();", element)

    def _submit_and_wait(self, submit: WebElement, deadline: Deadline, where: str) -> None:
        before = self.driver.find_element(By.TAG_NAME, "html")
        self._click(submit)
        self._wait(
            deadline,
            where,
            lambda d: _is_stale(before)
            or len(d.find_elements(By.CSS_SELECTOR, self.config.response_ready_selector)) > 0,
        )
        self._wait(deadline, where, self._dom_ready)

    def _wait(self, deadline: Deadline, where: str, condition: Callable[[WebDriver], bool]) -> None:
        timeout = deadline.cap(self.config.timeout_seconds)
        if timeout <= 0:
            raise DeadlineExceeded(where)
        try:
            WebDriverWait(self.driver, timeout).until(condition)
        except TimeoutException as exc:
            if deadline.expired():
                raise DeadlineExceeded(where) from exc
            raise
