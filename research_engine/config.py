from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter (strategist)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "google/gemini-2.5-flash"
    openrouter_model: str = ""
    strategist_model: str = ""  # optional override for plan/reflect/refine only
    strategist_max_tokens: int = 2048

    # Providers
    tavily_api_key: str = ""
    pubmed_api_key: str = ""
    ncbi_email: str = ""
    pubmed_years_back: int = 5
    medrxiv_days_back: int = 730

    # Per-provider timeouts (seconds)
    pubmed_timeout_s: float = 3.0
    medrxiv_timeout_s: float = 5.0
    clinical_trials_timeout_s: float = 3.0
    web_timeout_s: float = 10.0

    # Round budget
    max_rounds_ceiling: int = 4
    first_round_source_target: int = 25
    follow_up_round_source_target: int = 15
    web_source_share: float = 0.4

    # Safety overrides / stopping
    comprehensive_coverage_floor: int = 20
    absolute_source_floor: int = 15
    comprehensive_source_threshold: int = 30
    diminishing_returns_threshold: int = 3

    # Ranking / selection
    ranking_top_n: int = 30
    selection_base_limit: int = 25
    selection_extended_limit: int = 30
    selection_high_quality_threshold: int = 70
    selection_token_budget: int = 16800
    selection_min_relevance_score: int = 40
    selection_similarity_threshold: float = 0.85
    selection_semantic_dedup: bool = True

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
