"""Operations portal backend: request approval, routing, and notifications."""
