from tests.mocks.adapters import FakeChannelExecutor, FakeTextProvider
