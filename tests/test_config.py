
import pytest
import storybook.config as config_module

class TestConfig:
    def test_validate_success(self, monkeypatch):
        monkeypatch.setattr(config_module.Config, "USE_MOCK_ADAPTERS", False)
        monkeypatch.setattr(config_module.Config, "GEMINI_API_KEY", "test_key")
        # Should not raise
        config_module.Config.validate()

    def test_validate_failure(self, monkeypatch):
        monkeypatch.setattr(config_module.Config, "USE_MOCK_ADAPTERS", False)
        monkeypatch.setattr(config_module.Config, "GEMINI_API_KEY", None)
        with pytest.raises(ValueError, match="GEMINI_API_KEY environment variable is not set"):
            config_module.Config.validate()

    def test_validate_skipped_with_mock_adapters(self, monkeypatch):
        monkeypatch.setattr(config_module.Config, "USE_MOCK_ADAPTERS", True)
        monkeypatch.setattr(config_module.Config, "GEMINI_API_KEY", None)
        config_module.Config.validate()

    def test_setup_directories(self, tmp_path):
        projects = tmp_path / "projects"
        cache = tmp_path / "cache"
        config_module.setup_directories(projects, cache)

        assert projects.exists()
        assert (cache / "text").exists()
        assert (cache / "images").exists()

    def test_setup_directories_without_cache(self, tmp_path):
        projects = tmp_path / "projects"
        config_module.setup_directories(projects)

        assert projects.exists()
        assert list(tmp_path.iterdir()) == [projects]

    @pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("Yes", True), ("off", False), ("", False)])
    def test_env_flag(self, monkeypatch, value, expected):
        monkeypatch.setenv("SOME_FLAG", value)
        assert config_module._env_flag("SOME_FLAG") is expected
