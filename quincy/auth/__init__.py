"""Users-file authentication and the message exchange on the tunnel's first stream."""