from auth.microsoft_auth import MicrosoftAuth, AuthenticationError
